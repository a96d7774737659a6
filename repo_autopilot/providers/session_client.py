"""HTTP client for the remote coding-session backend."""

import uuid
from typing import Any

import httpx
import structlog

from repo_autopilot.enums import SessionStatus
from repo_autopilot.exceptions import SessionBackendError
from repo_autopilot.models.domain import SessionHandle, SessionInfo
from repo_autopilot.providers.base import SessionBackend
from repo_autopilot.utils.retry import async_retry, is_transient

log = structlog.get_logger(__name__)

API_VERSION = "2023-06-01"
BETA_HEADER = "ccr-byoc-2025-07-29"
WEB_URL_TEMPLATE = "https://claude.ai/code/{session_id}"
TITLE_MAX_LENGTH = 50


class RemoteSessionClient(SessionBackend):
    """Session backend speaking the ``/v1/sessions`` API.

    Sessions check out a git repository, work on it remotely, and push to a
    branch named in the session's outcome. The daemon never waits on a
    session; it only creates them and polls their status and events.
    """

    def __init__(
        self,
        api_key: str | None,
        environment_id: str | None,
        base_url: str = "https://api.anthropic.com",
        model: str = "claude-opus-4-5-20251101",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            api_key: Bearer token for the backend
            environment_id: Execution environment sessions run in
            base_url: API base URL
            model: Model sessions should use
            timeout: Per-request timeout in seconds
            transport: Optional transport override, used by tests
        """
        self.api_key = api_key
        self.environment_id = environment_id
        self.base_url = base_url.rstrip("/")
        self.model = model

        headers = {
            "anthropic-version": API_VERSION,
            "anthropic-beta": BETA_HEADER,
            "Content-Type": "application/json",
        }
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self.client = httpx.AsyncClient(timeout=timeout, headers=headers, transport=transport)

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key) and bool(self.environment_id)

    async def create_session(
        self,
        prompt: str,
        repo_url: str,
        branch_prefix: str,
        title: str | None = None,
    ) -> SessionHandle:
        """Create a session and send it the initial prompt."""
        if not self.is_configured:
            raise SessionBackendError("Session backend is missing an API key or environment id")

        git_url = repo_url[:-4] if repo_url.endswith(".git") else repo_url
        session_title = title or self._generate_title(prompt)
        payload = {
            "title": session_title,
            "events": [
                {
                    "type": "event",
                    "data": {
                        "uuid": str(uuid.uuid4()),
                        "session_id": "",
                        "type": "user",
                        "parent_tool_use_id": None,
                        "message": {"role": "user", "content": prompt},
                    },
                }
            ],
            "environment_id": self.environment_id,
            "session_context": {
                "sources": [{"type": "git_repository", "url": git_url}],
                "outcomes": [
                    {
                        "type": "git_repository",
                        "git_info": {
                            "type": "github",
                            "repo": self._repo_slug(git_url),
                            "branches": [branch_prefix],
                        },
                    }
                ],
                "model": self.model,
            },
        }

        log.info("creating_session", title=session_title, branch_prefix=branch_prefix)
        data = await self._request("POST", "/v1/sessions", "create session", json=payload)

        session_id = data["id"]
        log.info("session_created", session_id=session_id)
        return SessionHandle(
            session_id=session_id,
            web_url=WEB_URL_TEMPLATE.format(session_id=session_id),
            title=data.get("title") or session_title,
        )

    @async_retry(max_attempts=3, exceptions=(httpx.TransportError, SessionBackendError), retry_if=is_transient)
    async def get_session(self, session_id: str) -> SessionInfo:
        """Fetch status and outcome branches of a session."""
        data = await self._request("GET", f"/v1/sessions/{session_id}", "get session")

        raw_status = data.get("session_status", "")
        try:
            status = SessionStatus(raw_status)
        except ValueError:
            # Unknown or transitional states are treated as still running.
            status = SessionStatus.RUNNING

        return SessionInfo(
            session_id=session_id,
            status=status,
            title=data.get("title") or "",
            outcome_branches=self._outcome_branches(data),
        )

    @async_retry(max_attempts=3, exceptions=(httpx.TransportError, SessionBackendError), retry_if=is_transient)
    async def get_events(self, session_id: str) -> list[dict[str, Any]]:
        """Fetch the session's events in order."""
        data = await self._request("GET", f"/v1/sessions/{session_id}/events", "get events")
        return list(data.get("data") or [])

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def _request(self, method: str, path: str, action: str, **kwargs: Any) -> dict[str, Any]:
        """Send a request and decode the JSON body.

        Transport errors propagate so the retry decorator can see them;
        Throttling and server-error responses are retried there too.

        Raises:
            SessionBackendError: On a non-2xx response
        """
        response = await self.client.request(method, f"{self.base_url}{path}", **kwargs)
        if response.is_error:
            log.error(
                "session_api_error",
                action=action,
                status_code=response.status_code,
                response=response.text[:500],
            )
            raise SessionBackendError(
                f"Failed to {action}",
                status_code=response.status_code,
                response_text=response.text,
            )
        return response.json()

    @staticmethod
    def _outcome_branches(data: dict[str, Any]) -> list[str]:
        """Branches listed in ``session_context.outcomes[].git_info``."""
        branches: list[str] = []
        context = data.get("session_context") or {}
        for outcome in context.get("outcomes") or []:
            git_info = outcome.get("git_info") or {}
            branches.extend(branch for branch in git_info.get("branches") or [] if branch)
        return branches

    @staticmethod
    def _repo_slug(git_url: str) -> str:
        """``owner/name`` from a repository URL."""
        parts = git_url.rstrip("/").split("/")
        return "/".join(parts[-2:])

    @staticmethod
    def _generate_title(prompt: str) -> str:
        text = prompt.strip()
        title = text[:TITLE_MAX_LENGTH].replace("\n", " ").strip()
        return f"{title}..." if len(title) < len(text) else title
