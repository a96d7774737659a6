"""
Domain models for the autopilot daemon.

This module contains the data classes representing issues, pull requests,
board items, remote sessions, merge attempts, and cycle results. Providers
convert their API payloads into these types; the engine works exclusively
with them.

Example:
    Grouping items into a snapshot::

        snapshot = BoardSnapshot.from_items([
            BoardItem(item_id="PVTI_1", issue_number=7, title="Fix login", status=BoardStatus.READY),
        ])
        snapshot.count(BoardStatus.READY)  # 1
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from repo_autopilot.enums import HealthStatus, SessionStatus


class IssueState(str, Enum):
    """Enumeration of possible issue states."""

    OPEN = "open"
    """Issue is active and awaiting resolution."""

    CLOSED = "closed"
    """Issue has been resolved or dismissed."""


class BoardStatus(str, Enum):
    """Board column an item sits in.

    The happy path is BACKLOG -> READY -> IN_PROGRESS -> IN_REVIEW -> DONE.
    Column display names are configurable; these values are the daemon's
    own names for them.
    """

    BACKLOG = "backlog"
    """Discovered or reverted work waiting for promotion."""

    READY = "ready"
    """Promoted and waiting for a free session slot."""

    IN_PROGRESS = "in_progress"
    """A remote session is working on the item."""

    IN_REVIEW = "in_review"
    """A pull request exists and awaits review and merge."""

    DONE = "done"
    """Merged and closed. Terminal."""

    def __str__(self) -> str:
        return self.value


@dataclass
class Issue:
    """Represents a tracker issue.

    This is the normalized representation used internally, converted from
    the provider's own issue objects.
    """

    id: int
    """Provider database id. Prefer ``number`` for stable references."""

    number: int
    """Human-readable issue number (e.g., #42)."""

    title: str
    body: str
    state: IssueState
    labels: list[str]
    created_at: datetime
    updated_at: datetime
    author: str
    url: str


@dataclass
class Comment:
    """Represents a comment on an issue."""

    id: int
    body: str
    author: str
    created_at: datetime


@dataclass
class PullRequest:
    """Represents a pull request.

    ``mergeable`` is computed asynchronously by GitHub, so ``None`` is a
    legitimate value meaning "not computed yet" rather than an error.
    """

    id: int
    number: int
    title: str
    body: str
    head: str
    """Source branch name."""

    base: str
    """Target branch name."""

    state: str
    url: str
    created_at: datetime
    author: str = ""
    head_sha: str = ""
    mergeable: bool | None = None
    """True/False once computed, None while GitHub is still computing."""

    mergeable_state: str | None = None
    """GitHub's finer-grained state: clean, dirty, blocked, behind, unstable, unknown."""

    merged: bool = False


@dataclass
class MergeOutcome:
    """Result of asking the tracker to merge a pull request."""

    merged: bool
    sha: str | None = None
    message: str = ""


@dataclass
class FileChange:
    """One file touched by a pull request."""

    filename: str
    status: str
    additions: int = 0
    deletions: int = 0
    patch: str | None = None


@dataclass
class ProjectItem:
    """Raw project board row as returned by the tracker."""

    item_id: str
    issue_number: int
    title: str
    status_name: str | None
    """Display name of the status column, None when unset."""

    issue_state: IssueState = IssueState.OPEN
    labels: list[str] = field(default_factory=list)


@dataclass
class TrackingRecord:
    """Durable pointer stored in a tracking comment on the issue.

    The latest tracking comment on an issue is the only place the daemon
    remembers which session, branch, and pull request belong to it.
    """

    stage: str
    session_id: str | None = None
    web_url: str | None = None
    branch: str | None = None
    pr_number: int | None = None
    error_count: int = 0
    last_error: str | None = None
    conflict_attempts: int = 0
    reviewed_sha: str | None = None
    """Head commit the last posted review covered."""


@dataclass
class BoardItem:
    """A task: one tracked issue and the column it sits in."""

    item_id: str
    issue_number: int
    title: str
    status: BoardStatus
    branch: str | None = None
    pr_number: int | None = None
    session_id: str | None = None
    error_count: int = 0
    last_error: str | None = None
    conflict_attempts: int = 0
    reviewed_sha: str | None = None
    stage: str | None = None
    """Stage named by the latest tracking record."""

    labels: list[str] = field(default_factory=list)
    tracking_loaded: bool = True
    """False when the issue's comments could not be read this cycle."""

    def apply_tracking(self, record: TrackingRecord | None) -> None:
        """Copy the durable fields of ``record`` onto this item."""
        if record is None:
            return
        self.branch = record.branch
        self.pr_number = record.pr_number
        self.session_id = record.session_id
        self.error_count = record.error_count
        self.last_error = record.last_error
        self.conflict_attempts = record.conflict_attempts
        self.reviewed_sha = record.reviewed_sha
        self.stage = record.stage

    def to_tracking(self, stage: str, web_url: str | None = None) -> TrackingRecord:
        """Build the record to persist after this item changes."""
        return TrackingRecord(
            stage=stage,
            session_id=self.session_id,
            web_url=web_url,
            branch=self.branch,
            pr_number=self.pr_number,
            error_count=self.error_count,
            last_error=self.last_error,
            conflict_attempts=self.conflict_attempts,
            reviewed_sha=self.reviewed_sha,
        )


@dataclass
class BoardSnapshot:
    """All open board items grouped by column, read once per cycle.

    Stages move items within the snapshot as they transition them remotely,
    so later stages in the same cycle see earlier moves without a re-read.
    """

    columns: dict[BoardStatus, list[BoardItem]] = field(
        default_factory=lambda: {status: [] for status in BoardStatus}
    )
    degraded: bool = False
    """True when some tracking comments could not be read."""

    @classmethod
    def from_items(cls, items: list[BoardItem], degraded: bool = False) -> "BoardSnapshot":
        snapshot = cls(degraded=degraded)
        for item in items:
            snapshot.columns[item.status].append(item)
        return snapshot

    def column(self, status: BoardStatus) -> list[BoardItem]:
        """Items in ``status``, oldest (lowest issue number) first."""
        return sorted(self.columns[status], key=lambda item: item.issue_number)

    def count(self, status: BoardStatus) -> int:
        return len(self.columns[status])

    def move(self, item: BoardItem, status: BoardStatus) -> None:
        """Relocate ``item`` to ``status`` within this snapshot."""
        self.columns[item.status] = [other for other in self.columns[item.status] if other is not item]
        item.status = status
        self.columns[status].append(item)

    def all_items(self) -> list[BoardItem]:
        return [item for status in BoardStatus for item in self.columns[status]]

    def titles(self) -> set[str]:
        """Lower-cased titles of every item, for duplicate detection."""
        return {item.title.strip().lower() for item in self.all_items()}


@dataclass
class SessionHandle:
    """Identifiers returned when a remote session is created."""

    session_id: str
    web_url: str
    title: str = ""


@dataclass
class SessionInfo:
    """Current state of a remote session."""

    session_id: str
    status: SessionStatus
    title: str = ""
    outcome_branches: list[str] = field(default_factory=list)
    """Branches the backend reports in the session's structured outcome."""


@dataclass
class MergeAttemptResult:
    """Outcome of one merge attempt on one pull request."""

    merged: bool
    pr_number: int | None = None
    has_conflicts: bool = False
    conflict_resolution_started: bool = False
    session_id: str | None = None
    web_url: str | None = None
    sha: str | None = None
    reason: str | None = None
    """Why the merge was deferred (pending, blocked by status checks)."""

    error: str | None = None

    @property
    def deferred(self) -> bool:
        return not self.merged and not self.has_conflicts and self.reason is not None


@dataclass
class CycleResult:
    """Summary of one daemon cycle."""

    cycle: int
    success: bool = True
    tasks_discovered: int = 0
    tasks_promoted: int = 0
    tasks_started: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    prs_merged: int = 0
    duration_seconds: float = 0.0
    errors: list[str] = field(default_factory=list)
    degraded: bool = False
    service_health: dict[str, Any] = field(default_factory=dict)
    overall_status: HealthStatus = HealthStatus.HEALTHY
    skipped_stages: dict[str, str] = field(default_factory=dict)

    def record_error(self, message: str) -> None:
        self.errors.append(message)
        self.success = False
