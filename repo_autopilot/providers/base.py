"""
Abstract interfaces for the daemon's external collaborators.

Two narrow contracts are defined here:

- :class:`IssueTracker`: issues, comments, labels, pull requests, checks, and
  the project board's status field.
- :class:`SessionBackend`: the remote coding-session API.

The engine depends only on these interfaces, so tests substitute
``AsyncMock`` instances and never touch a live API.
"""

from abc import ABC, abstractmethod
from typing import Any

from repo_autopilot.models.domain import (
    Comment,
    FileChange,
    Issue,
    MergeOutcome,
    ProjectItem,
    PullRequest,
    SessionHandle,
    SessionInfo,
)


class IssueTracker(ABC):
    """Abstract base class for issue/PR/project tracker providers.

    All numeric ids returned are stable across calls. ``PullRequest.mergeable``
    may legitimately be ``None`` while the tracker is still computing it.
    """

    rate_limit_remaining: int | None = None
    """API budget reported by the most recent response, when known."""

    login: str | None = None
    """Account the tracker is authenticated as, resolved by ``connect``."""

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection and verify credentials."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Release any client resources."""
        pass

    @abstractmethod
    async def get_issue(self, issue_number: int) -> Issue:
        """Retrieve a single issue by number."""
        pass

    @abstractmethod
    async def create_issue(self, title: str, body: str, labels: list[str] | None = None) -> Issue:
        """Create a new issue.

        Args:
            title: Issue title
            body: Markdown body
            labels: Label names to apply

        Returns:
            The created issue
        """
        pass

    @abstractmethod
    async def list_open_issues(self, labels: list[str]) -> list[Issue]:
        """List open issues carrying every label in ``labels``, excluding pull requests."""
        pass

    @abstractmethod
    async def close_issue(self, issue_number: int) -> None:
        """Close an issue."""
        pass

    @abstractmethod
    async def add_labels(self, issue_number: int, labels: list[str]) -> None:
        """Add labels to an issue, keeping the ones it already has."""
        pass

    @abstractmethod
    async def add_comment(self, issue_number: int, body: str) -> Comment:
        """Add a comment to an issue."""
        pass

    @abstractmethod
    async def get_comments(self, issue_number: int) -> list[Comment]:
        """Retrieve all comments on an issue, oldest first."""
        pass

    @abstractmethod
    async def find_pull_request(self, head: str) -> PullRequest | None:
        """Find the open pull request whose source branch is ``head``."""
        pass

    @abstractmethod
    async def create_pull_request(self, title: str, body: str, head: str, base: str) -> PullRequest:
        """Open a pull request from ``head`` into ``base``."""
        pass

    @abstractmethod
    async def get_pull_request(self, pr_number: int) -> PullRequest:
        """Retrieve a pull request, including its mergeability."""
        pass

    @abstractmethod
    async def get_pull_request_files(self, pr_number: int) -> list[FileChange]:
        """List the files a pull request changes, with their patches."""
        pass

    @abstractmethod
    async def create_review(self, pr_number: int, body: str, event: str) -> None:
        """Submit a review.

        Args:
            pr_number: Pull request number
            body: Review body
            event: APPROVE, REQUEST_CHANGES, or COMMENT
        """
        pass

    @abstractmethod
    async def merge_pull_request(self, pr_number: int, title: str, method: str = "squash") -> MergeOutcome:
        """Merge a pull request.

        Returns:
            MergeOutcome; ``merged`` False when the tracker refused the merge
        """
        pass

    @abstractmethod
    async def get_combined_status(self, ref: str) -> str:
        """Combined check status of a commit: success, pending, or failure."""
        pass

    @abstractmethod
    async def delete_branch(self, branch: str) -> None:
        """Delete a branch from the remote repository."""
        pass

    @abstractmethod
    async def get_status_field(self, project_id: str, field_name: str) -> tuple[str, dict[str, str]]:
        """Resolve the project's single-select status field.

        Returns:
            Tuple of (field_id, {option_name: option_id})

        Raises:
            ConfigurationError: If the project has no field named ``field_name``
        """
        pass

    @abstractmethod
    async def get_project_items(self, project_id: str, status_field: str = "Status") -> list[ProjectItem]:
        """List every issue-backed item on the project board."""
        pass

    @abstractmethod
    async def set_item_status(self, project_id: str, item_id: str, field_id: str, option_id: str) -> None:
        """Set an item's status field. Setting the current value is a no-op."""
        pass

    @abstractmethod
    async def add_issue_to_project(self, project_id: str, issue_number: int) -> str:
        """Add an issue to the board and return the new item id."""
        pass


class SessionBackend(ABC):
    """Abstract base class for the remote coding-session backend."""

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """Whether credentials and an execution environment are available."""
        pass

    @abstractmethod
    async def create_session(
        self,
        prompt: str,
        repo_url: str,
        branch_prefix: str,
        title: str | None = None,
    ) -> SessionHandle:
        """Start a session working on ``repo_url``.

        Args:
            prompt: Instructions for the agent
            repo_url: Repository the session checks out
            branch_prefix: Branch (or branch prefix) the session pushes to
            title: Optional session title

        Returns:
            SessionHandle with the session id and web url
        """
        pass

    @abstractmethod
    async def get_session(self, session_id: str) -> SessionInfo:
        """Fetch a session's status and structured outcome."""
        pass

    @abstractmethod
    async def get_events(self, session_id: str) -> list[dict[str, Any]]:
        """Fetch the session's ordered event stream."""
        pass

    async def close(self) -> None:
        """Release client resources."""
        return None
