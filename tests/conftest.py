"""Pytest configuration and shared fixtures."""

from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from repo_autopilot.config.settings import AutopilotSettings
from repo_autopilot.engine.state_manager import StateManager
from repo_autopilot.models.domain import (
    BoardItem,
    BoardStatus,
    Comment,
    Issue,
    IssueState,
    PullRequest,
    SessionHandle,
)
from repo_autopilot.providers.base import IssueTracker, SessionBackend
from repo_autopilot.utils.circuit_breaker import ServiceHealthRegistry

STATUS_OPTIONS = {
    "Backlog": "opt-backlog",
    "Ready": "opt-ready",
    "In progress": "opt-in-progress",
    "In review": "opt-in-review",
    "Done": "opt-done",
}


class FakeClock:
    """Manually advanced clock for breakers and the cache."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path: Path) -> AutopilotSettings:
    """Settings with every stage's prerequisites satisfied."""
    return AutopilotSettings(
        github={"token": "ghp_test_token"},
        repository={"owner": "acme", "name": "widgets", "default_branch": "main"},
        project={"project_id": "PVT_kwDOtest"},
        sessions={"api_key": "sk-test", "environment_id": "env_123"},
        cache={"cache_dir": str(tmp_path / "cache")},
        discovery={"repo_path": str(tmp_path / "repo")},
    )


@pytest.fixture
def tracker() -> AsyncMock:
    """Issue tracker mock with harmless defaults."""
    mock = AsyncMock(spec=IssueTracker)
    mock.rate_limit_remaining = None
    mock.login = "autopilot-bot"
    mock.get_comments.return_value = []
    mock.list_open_issues.return_value = []
    mock.add_comment.side_effect = lambda number, body: _comment(body)
    mock.set_item_status.return_value = None
    return mock


@pytest.fixture
def sessions() -> AsyncMock:
    """Session backend mock that is configured and creates sessions."""
    mock = AsyncMock(spec=SessionBackend)
    mock.is_configured = True
    mock.create_session.return_value = SessionHandle(
        session_id="sess_new",
        web_url="https://claude.ai/code/sess_new",
    )
    return mock


@pytest.fixture
def registry(clock: FakeClock) -> ServiceHealthRegistry:
    return ServiceHealthRegistry(failure_threshold=3, reset_timeout=60.0, clock=clock)


@pytest.fixture
def state(tracker: AsyncMock, registry: ServiceHealthRegistry, settings: AutopilotSettings) -> StateManager:
    """StateManager whose board columns are already resolved."""
    manager = StateManager(
        tracker,
        registry,
        settings.project,
        capacity={
            BoardStatus.READY: settings.daemon.max_ready,
            BoardStatus.IN_PROGRESS: settings.daemon.max_in_progress,
        },
    )
    manager.field_id = "PVTSSF_status"
    for status, name in manager.column_names.items():
        manager._option_ids[status] = STATUS_OPTIONS[name]
        manager._status_by_name[name.lower()] = status
    return manager


def _item(number: int, status: BoardStatus = BoardStatus.BACKLOG, **kwargs) -> BoardItem:
    """Board item for issue ``number``."""
    return BoardItem(
        item_id=f"PVTI_{number}",
        issue_number=number,
        title=kwargs.pop("title", f"Task {number}"),
        status=status,
        **kwargs,
    )


def _issue(number: int, title: str = "Fix login redirect", labels: list[str] | None = None) -> Issue:
    now = datetime(2025, 1, 1, tzinfo=UTC)
    return Issue(
        id=1000 + number,
        number=number,
        title=title,
        body="Users are sent to /home instead of the page they asked for.",
        state=IssueState.OPEN,
        labels=labels or [],
        created_at=now,
        updated_at=now,
        author="octocat",
        url=f"https://github.com/acme/widgets/issues/{number}",
    )


def _comment(body: str, created_at: datetime | None = None, comment_id: int = 1) -> Comment:
    return Comment(
        id=comment_id,
        body=body,
        author="autopilot-bot",
        created_at=created_at or datetime(2025, 1, 1, tzinfo=UTC),
    )


def _pr(number: int = 12, head: str = "claude/issue-4", **kwargs) -> PullRequest:
    defaults = {
        "id": 5000 + number,
        "number": number,
        "title": "Fix login redirect",
        "body": "Closes #4",
        "head": head,
        "base": "main",
        "state": "open",
        "url": f"https://github.com/acme/widgets/pull/{number}",
        "created_at": datetime(2025, 1, 2, tzinfo=UTC),
        "head_sha": "abc123",
        "mergeable": True,
        "mergeable_state": "clean",
    }
    defaults.update(kwargs)
    return PullRequest(**defaults)


@pytest.fixture
def make_item():
    """Factory for board items."""
    return _item


@pytest.fixture
def make_issue():
    """Factory for issues."""
    return _issue


@pytest.fixture
def make_comment():
    """Factory for issue comments."""
    return _comment


@pytest.fixture
def make_pr():
    """Factory for pull requests."""
    return _pr
