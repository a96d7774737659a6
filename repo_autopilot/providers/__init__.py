"""Provider implementations for the tracker and session backend.

Key Components:
    - IssueTracker: Abstract base for issue/PR/project-board providers
    - SessionBackend: Abstract base for remote coding-session backends
    - GitHubRestProvider: GitHub REST (PyGithub) plus Projects v2 (GraphQL)
    - RemoteSessionClient: HTTP client for the ``/v1/sessions`` API

Example:
    >>> from repo_autopilot.providers import GitHubRestProvider, RemoteSessionClient
    >>> tracker = GitHubRestProvider(token="...", owner="acme", repo="widgets")
    >>> sessions = RemoteSessionClient(api_key="...", environment_id="env_123")
"""

from repo_autopilot.providers.base import IssueTracker, SessionBackend
from repo_autopilot.providers.github_rest import GitHubRestProvider
from repo_autopilot.providers.session_client import RemoteSessionClient

__all__ = [
    "GitHubRestProvider",
    "IssueTracker",
    "RemoteSessionClient",
    "SessionBackend",
]
