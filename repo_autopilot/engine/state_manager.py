"""
Board-backed task state.

The project board is the only task store. There is no local database: every
cycle reads the board once into a :class:`BoardSnapshot`, rehydrating each
item's branch, PR, session, and error count from its latest tracking comment.
Stages then transition items through :meth:`StateManager.transition`, which
validates the edge, updates the board, and moves the item within the
snapshot so later stages see the change without re-reading.

State Machine::

    Backlog -> Ready -> InProgress -> InReview -> Done
                 ^          |            |  ^
                 |          v            |  | (pending conflict resolution)
                 |       Backlog         +--+
                 +-----------------------+  (changes requested, conflicts)

Example:
    >>> state = StateManager(tracker, registry, settings.project)
    >>> await state.initialize()
    >>> snapshot = await state.snapshot()
    >>> await state.transition(snapshot, snapshot.column(BoardStatus.BACKLOG)[0], BoardStatus.READY)
"""

from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from repo_autopilot.config.settings import ProjectConfig
from repo_autopilot.engine.tracking import format_tracking_comment, latest_tracking_record
from repo_autopilot.exceptions import ConfigurationError, WorkflowError
from repo_autopilot.models.domain import BoardItem, BoardSnapshot, BoardStatus, Comment, Issue, IssueState
from repo_autopilot.providers.base import IssueTracker
from repo_autopilot.utils.circuit_breaker import ServiceHealthRegistry

log = structlog.get_logger(__name__)

T = TypeVar("T")

ALLOWED_TRANSITIONS: dict[BoardStatus, frozenset[BoardStatus]] = {
    BoardStatus.BACKLOG: frozenset({BoardStatus.READY}),
    BoardStatus.READY: frozenset({BoardStatus.IN_PROGRESS}),
    BoardStatus.IN_PROGRESS: frozenset({BoardStatus.IN_REVIEW, BoardStatus.BACKLOG}),
    BoardStatus.IN_REVIEW: frozenset({BoardStatus.DONE, BoardStatus.READY, BoardStatus.IN_REVIEW}),
    BoardStatus.DONE: frozenset(),
}

# Edges that pull new work forward and therefore respect column capacity.
CAPACITY_GATED: frozenset[tuple[BoardStatus, BoardStatus]] = frozenset(
    {
        (BoardStatus.BACKLOG, BoardStatus.READY),
        (BoardStatus.READY, BoardStatus.IN_PROGRESS),
    }
)


class StateManager:
    """Reads and mutates task state on the project board.

    Attributes:
        tracker: Issue/project provider
        registry: Breakers; every tracker call goes through ``github``
        project: Board id, status field, and column names
        capacity: Column limits enforced on capacity-gated edges
    """

    def __init__(
        self,
        tracker: IssueTracker,
        registry: ServiceHealthRegistry,
        project: ProjectConfig,
        capacity: dict[BoardStatus, int] | None = None,
    ) -> None:
        self.tracker = tracker
        self.registry = registry
        self.project = project
        self.capacity = capacity or {}
        self.field_id: str | None = None
        self._option_ids: dict[BoardStatus, str] = {}
        self._status_by_name: dict[str, BoardStatus] = {}

    @property
    def column_names(self) -> dict[BoardStatus, str]:
        return {
            BoardStatus.BACKLOG: self.project.backlog_column,
            BoardStatus.READY: self.project.ready_column,
            BoardStatus.IN_PROGRESS: self.project.in_progress_column,
            BoardStatus.IN_REVIEW: self.project.in_review_column,
            BoardStatus.DONE: self.project.done_column,
        }

    async def initialize(self) -> None:
        """Resolve the status field and column option ids once at startup.

        Raises:
            ConfigurationError: If the field or any column is missing
        """
        field_id, options = await self.github(
            lambda: self.tracker.get_status_field(self.project.project_id, self.project.status_field)
        )
        options_by_name = {name.lower(): option_id for name, option_id in options.items()}

        missing = []
        for status, name in self.column_names.items():
            option_id = options_by_name.get(name.lower())
            if option_id is None:
                missing.append(name)
                continue
            self._option_ids[status] = option_id
            self._status_by_name[name.lower()] = status

        if missing:
            raise ConfigurationError(
                f"Status field '{self.project.status_field}' is missing columns: {', '.join(missing)}"
            )

        self.field_id = field_id
        log.info("board_initialized", project_id=self.project.project_id, field_id=field_id)

    async def snapshot(self) -> BoardSnapshot:
        """Read the board once and rehydrate tracking data for open items.

        Only tracking comments written by the tracker's own account are
        trusted. Items whose comments could not be read are kept for column
        counts but marked ``tracking_loaded = False``; stages leave them alone
        until a later cycle reads them.
        """
        self._require_initialized()
        project_items = await self.github(
            lambda: self.tracker.get_project_items(self.project.project_id, self.project.status_field)
        )

        items: list[BoardItem] = []
        degraded = False
        for project_item in project_items:
            if project_item.issue_state is not IssueState.OPEN:
                continue

            if project_item.status_name is None:
                status = BoardStatus.BACKLOG
            else:
                status = self._status_by_name.get(project_item.status_name.lower())
                if status is None:
                    log.debug(
                        "board_item_unknown_column",
                        issue=project_item.issue_number,
                        column=project_item.status_name,
                    )
                    continue

            item = BoardItem(
                item_id=project_item.item_id,
                issue_number=project_item.issue_number,
                title=project_item.title,
                status=status,
                labels=list(project_item.labels),
            )

            if status is not BoardStatus.DONE:
                comments, comments_degraded = await self.registry.breaker("github").execute_with_fallback(
                    lambda n=item.issue_number: self.tracker.get_comments(n), None
                )
                if comments_degraded:
                    degraded = True
                    item.tracking_loaded = False
                    log.warning("tracking_unavailable", issue=item.issue_number)
                else:
                    item.apply_tracking(latest_tracking_record(comments, author=self.tracker.login))

            items.append(item)

        snapshot = BoardSnapshot.from_items(items, degraded=degraded)
        log.info(
            "board_snapshot",
            **{str(status): snapshot.count(status) for status in BoardStatus},
            degraded=degraded,
        )
        return snapshot

    async def transition(self, snapshot: BoardSnapshot, item: BoardItem, status: BoardStatus) -> None:
        """Move ``item`` to ``status`` on the board and in ``snapshot``.

        Raises:
            WorkflowError: If the edge is not in the state machine or the
                destination column is full
        """
        self._require_initialized()
        current = item.status
        if status not in ALLOWED_TRANSITIONS[current]:
            raise WorkflowError(f"Illegal transition for #{item.issue_number}: {current} -> {status}")

        if (current, status) in CAPACITY_GATED:
            limit = self.capacity.get(status)
            if limit is not None and snapshot.count(status) >= limit:
                raise WorkflowError(f"Column {status} is full ({limit}); cannot move #{item.issue_number}")

        if current is not status:
            await self.github(
                lambda: self.tracker.set_item_status(
                    self.project.project_id, item.item_id, self.field_id, self._option_ids[status]
                )
            )
            snapshot.move(item, status)

        log.info("task_transitioned", issue=item.issue_number, from_status=str(current), to_status=str(status))

    async def add_issue(self, issue: Issue) -> BoardItem:
        """Add ``issue`` to the board in Backlog."""
        self._require_initialized()
        item_id = await self.github(lambda: self.tracker.add_issue_to_project(self.project.project_id, issue.number))
        await self.github(
            lambda: self.tracker.set_item_status(
                self.project.project_id, item_id, self.field_id, self._option_ids[BoardStatus.BACKLOG]
            )
        )
        log.info("task_added", issue=issue.number, item_id=item_id)
        return BoardItem(
            item_id=item_id,
            issue_number=issue.number,
            title=issue.title,
            status=BoardStatus.BACKLOG,
            labels=list(issue.labels),
        )

    async def record(
        self,
        item: BoardItem,
        stage: str,
        web_url: str | None = None,
        details: str | None = None,
    ) -> Comment:
        """Post a tracking comment capturing the item's current pointers."""
        body = format_tracking_comment(item.to_tracking(stage, web_url=web_url), details=details)
        return await self.github(lambda: self.tracker.add_comment(item.issue_number, body))

    async def github(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run a tracker call through the ``github`` breaker.

        Raises:
            CircuitOpenError: If the breaker is open
        """
        breaker = self.registry.breaker("github")
        try:
            return await breaker.execute(operation)
        finally:
            if isinstance(self.tracker.rate_limit_remaining, int):
                breaker.record_rate_limit(self.tracker.rate_limit_remaining)

    def _require_initialized(self) -> None:
        if self.field_id is None:
            raise WorkflowError("StateManager.initialize() must be called first")
