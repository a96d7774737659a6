"""Discover stage: open backlog issues for new marker comments."""

import structlog

from repo_autopilot.config.settings import AutopilotSettings
from repo_autopilot.engine.discovery import MarkerScanner
from repo_autopilot.engine.stages.base import CycleStage
from repo_autopilot.engine.state_manager import StateManager
from repo_autopilot.exceptions import PrerequisiteError
from repo_autopilot.models.domain import BoardSnapshot, BoardStatus, CycleResult
from repo_autopilot.providers.base import SessionBackend

log = structlog.get_logger(__name__)


class DiscoveryStage(CycleStage):
    """Create backlog items while the backlog is below its throttle threshold."""

    name = "discover"

    def __init__(
        self,
        state: StateManager,
        sessions: SessionBackend,
        settings: AutopilotSettings,
        scanner: MarkerScanner | None,
    ) -> None:
        super().__init__(state, sessions, settings)
        self.scanner = scanner

    def check_prerequisites(self) -> None:
        if not self.settings.discovery.enabled or self.scanner is None:
            raise PrerequisiteError("discovery is disabled", stage=self.name)

    async def run(self, snapshot: BoardSnapshot, result: CycleResult) -> None:
        threshold = self.settings.daemon.backlog_threshold
        backlog = snapshot.count(BoardStatus.BACKLOG)
        if backlog >= threshold:
            log.info("discovery_throttled", backlog=backlog, threshold=threshold)
            return

        limit = min(self.settings.discovery.max_issues_per_cycle, threshold - backlog)
        labels = [self.settings.labels.automation]

        # Issues created in an earlier cycle but never added to the board still count.
        open_issues = await self.state.github(lambda: self.tracker.list_open_issues(labels))
        existing = snapshot.titles() | {issue.title.strip().lower() for issue in open_issues}

        tasks = await self.scanner.discover(existing, limit)

        for task in tasks:
            try:
                issue = await self.state.github(lambda t=task: self.tracker.create_issue(t.title, t.body, labels))
                item = await self.state.add_issue(issue)
            except Exception as e:
                log.error("discovery_issue_failed", title=task.title, error=str(e))
                result.record_error(f"{self.name}: {task.title}: {e}")
                continue

            snapshot.columns[BoardStatus.BACKLOG].append(item)
            result.tasks_discovered += 1
            log.info("task_discovered", issue=issue.number, title=task.title, source=f"{task.file}:{task.line}")
