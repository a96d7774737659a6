"""
Base class for daemon cycle stages.

Each cycle runs five stages in a fixed order against one board snapshot:
discover, promote, start, poll, review. A stage receives the snapshot and
the cycle's :class:`CycleResult`, transitions items through the
:class:`StateManager`, and records what it did on the result.

Failure Isolation:
    A failure on one item is caught, logged, and recorded on the result,
    and the stage moves on to the next item. A stage whose prerequisites
    are missing raises :class:`PrerequisiteError` from
    :meth:`CycleStage.check_prerequisites`; the daemon skips it for the
    cycle and the remaining stages still run.

Example:
    >>> class NoopStage(CycleStage):
    ...     name = "noop"
    ...     async def run(self, snapshot, result):
    ...         for item in snapshot.column(BoardStatus.READY):
    ...             log.info("seen", issue=item.issue_number)
"""

from abc import ABC, abstractmethod

import structlog

from repo_autopilot.config.settings import AutopilotSettings
from repo_autopilot.engine.state_manager import StateManager
from repo_autopilot.models.domain import BoardItem, BoardSnapshot, BoardStatus, CycleResult
from repo_autopilot.providers.base import IssueTracker, SessionBackend
from repo_autopilot.utils.circuit_breaker import ServiceHealthRegistry

log = structlog.get_logger(__name__)


class CycleStage(ABC):
    """Abstract base class for the five cycle stages.

    Attributes:
        state: Board access and transitions
        sessions: Remote coding-session backend
        settings: Daemon configuration
        name: Short stage name used in logs and ``skipped_stages``
    """

    name: str = "stage"

    def __init__(
        self,
        state: StateManager,
        sessions: SessionBackend,
        settings: AutopilotSettings,
    ) -> None:
        self.state = state
        self.sessions = sessions
        self.settings = settings

    @property
    def tracker(self) -> IssueTracker:
        return self.state.tracker

    @property
    def registry(self) -> ServiceHealthRegistry:
        return self.state.registry

    def check_prerequisites(self) -> None:
        """Raise :class:`PrerequisiteError` if the stage cannot run this cycle."""
        return None

    @abstractmethod
    async def run(self, snapshot: BoardSnapshot, result: CycleResult) -> None:
        """Process the items this stage owns.

        Args:
            snapshot: The cycle's board snapshot; transitions update it in place
            result: Accumulates counters and per-item errors
        """
        pass

    def workable(self, snapshot: BoardSnapshot, status: BoardStatus, skip_flagged: bool = False) -> list[BoardItem]:
        """Items in ``status`` this stage may act on, oldest first.

        Items whose tracking comments could not be read are left for a later
        cycle. With ``skip_flagged``, items labeled needs-attention are left
        for a human.
        """
        label = self.settings.labels.needs_attention
        items = []
        for item in snapshot.column(status):
            if not item.tracking_loaded:
                log.debug("item_skipped_untracked", stage=self.name, issue=item.issue_number)
                continue
            if skip_flagged and label in item.labels:
                log.debug("item_skipped_needs_attention", stage=self.name, issue=item.issue_number)
                continue
            items.append(item)
        return items

    async def revert_to_backlog(
        self,
        snapshot: BoardSnapshot,
        item: BoardItem,
        result: CycleResult,
        reason: str,
        details: str | None = None,
    ) -> None:
        """Send a failed item back to Backlog and explain why on the issue.

        The error count goes up by one; promotion stops retrying the item
        once it reaches ``daemon.max_task_attempts``.
        """
        item.error_count += 1
        item.last_error = reason
        item.session_id = None
        await self.state.transition(snapshot, item, BoardStatus.BACKLOG)
        await self.state.record(item, "reverted", details=details)
        result.tasks_failed += 1
        log.warning(
            "task_reverted",
            stage=self.name,
            issue=item.issue_number,
            reason=reason,
            error_count=item.error_count,
        )

    async def flag_needs_attention(self, item: BoardItem) -> None:
        """Apply the needs-attention label once."""
        label = self.settings.labels.needs_attention
        if label in item.labels:
            return
        await self.state.github(lambda: self.tracker.add_labels(item.issue_number, [label]))
        item.labels.append(label)
        log.warning("task_needs_attention", issue=item.issue_number, last_error=item.last_error)

    def item_failed(self, item: BoardItem, error: Exception, result: CycleResult) -> None:
        """Record a per-item failure without interrupting the stage."""
        log.error("stage_item_failed", stage=self.name, issue=item.issue_number, error=str(error), exc_info=True)
        result.record_error(f"{self.name} #{item.issue_number}: {error}")
