"""
The autopilot daemon: a loop of five-stage cycles over the project board.

Each cycle reads the board once, then runs discover, promote, start, poll,
and review against that single snapshot. Nothing an item or an external call
raises can end the process: stage and item failures are recorded on the
cycle's :class:`CycleResult`, and the loop's outer boundary logs anything
else and carries on with the next cycle.

Shutdown is cooperative. SIGINT and SIGTERM set a stop flag that is checked
between cycles, so an in-flight cycle always completes. The sleep between
cycles wakes up early when the flag is set.

Example:
    >>> daemon = Daemon(settings, tracker, sessions, registry, cache)
    >>> await daemon.start()
    >>> result = await daemon.run_cycle()
    >>> result.tasks_started
    2
"""

import asyncio
import signal
import time

import structlog

from repo_autopilot.config.settings import AutopilotSettings
from repo_autopilot.engine.code_review import CodeReviewer
from repo_autopilot.engine.discovery import MarkerScanner
from repo_autopilot.engine.merge_coordinator import MergeCoordinator
from repo_autopilot.engine.stages import (
    CycleStage,
    DiscoveryStage,
    PollStage,
    PromotionStage,
    ReviewStage,
    StartStage,
)
from repo_autopilot.engine.state_manager import StateManager
from repo_autopilot.enums import HealthStatus
from repo_autopilot.exceptions import AutopilotError, PrerequisiteError
from repo_autopilot.models.domain import BoardStatus, CycleResult
from repo_autopilot.providers.base import IssueTracker, SessionBackend
from repo_autopilot.utils.caching import PersistentAnalysisCache
from repo_autopilot.utils.circuit_breaker import ServiceHealthRegistry

log = structlog.get_logger(__name__)


class Daemon:
    """Runs daemon cycles until stopped.

    Attributes:
        settings: Full daemon configuration
        state: Board access shared by all stages
        stages: The five stages, in execution order
        cycle_count: Number of cycles started so far
    """

    def __init__(
        self,
        settings: AutopilotSettings,
        tracker: IssueTracker,
        sessions: SessionBackend,
        registry: ServiceHealthRegistry,
        cache: PersistentAnalysisCache | None = None,
    ) -> None:
        self.settings = settings
        self.tracker = tracker
        self.sessions = sessions
        self.registry = registry
        self.cache = cache

        self.state = StateManager(
            tracker,
            registry,
            settings.project,
            capacity={
                BoardStatus.READY: settings.daemon.max_ready,
                BoardStatus.IN_PROGRESS: settings.daemon.max_in_progress,
            },
        )
        scanner = None
        if cache is not None and settings.discovery.enabled:
            scanner = MarkerScanner(settings.discovery, cache, git_breaker=registry.breaker("git"))
        merger = MergeCoordinator(tracker, sessions, registry, settings.repository, settings.merge)
        reviewer = CodeReviewer(tracker)

        self.stages: list[CycleStage] = [
            DiscoveryStage(self.state, sessions, settings, scanner),
            PromotionStage(self.state, sessions, settings),
            StartStage(self.state, sessions, settings),
            PollStage(self.state, sessions, settings),
            ReviewStage(self.state, sessions, settings, reviewer, merger),
        ]

        self.cycle_count = 0
        self._stop_event = asyncio.Event()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    async def start(self) -> None:
        """Connect to the tracker, resolve the board, and load the cache."""
        await self.tracker.connect()
        await self.state.initialize()
        if self.cache is not None:
            await self.cache.warm_cache()

    async def close(self) -> None:
        """Release provider resources."""
        await self.sessions.close()
        await self.tracker.disconnect()

    def stop(self) -> None:
        """Request shutdown after the current cycle."""
        if not self._stop_event.is_set():
            log.info("daemon_stop_requested", cycle=self.cycle_count)
        self._stop_event.set()

    async def run_cycle(self) -> CycleResult:
        """Run one cycle: one board snapshot, five stages."""
        self.cycle_count += 1
        result = CycleResult(cycle=self.cycle_count)
        started = time.monotonic()

        structlog.contextvars.bind_contextvars(cycle=self.cycle_count)
        try:
            log.info("cycle_started")
            try:
                snapshot = await self.state.snapshot()
            except Exception as e:
                log.error("board_snapshot_failed", error=str(e))
                result.record_error(f"snapshot: {e}")
                result.degraded = True
            else:
                result.degraded = result.degraded or snapshot.degraded
                for stage in self.stages:
                    await self._run_stage(stage, snapshot, result)

            result.duration_seconds = time.monotonic() - started
            health = self.registry.snapshot()
            result.service_health = {name: service.to_dict() for name, service in health.items()}
            result.overall_status = self.registry.overall_status()
            if result.overall_status is not HealthStatus.HEALTHY:
                result.degraded = True

            log.info(
                "cycle_complete",
                success=result.success,
                discovered=result.tasks_discovered,
                promoted=result.tasks_promoted,
                started=result.tasks_started,
                completed=result.tasks_completed,
                failed=result.tasks_failed,
                merged=result.prs_merged,
                errors=len(result.errors),
                degraded=result.degraded,
                overall_status=str(result.overall_status),
                skipped=result.skipped_stages,
                duration_seconds=round(result.duration_seconds, 3),
            )
            return result
        finally:
            structlog.contextvars.unbind_contextvars("cycle")

    async def _run_stage(self, stage: CycleStage, snapshot, result: CycleResult) -> None:
        try:
            stage.check_prerequisites()
        except PrerequisiteError as e:
            result.skipped_stages[stage.name] = e.message
            log.info("stage_skipped", stage=stage.name, reason=e.message)
            return

        try:
            await stage.run(snapshot, result)
        except Exception as e:
            log.error("stage_failed", stage=stage.name, error=str(e), exc_info=True)
            result.record_error(f"{stage.name}: {e}")

    async def run(self, interval: float | None = None, run_once: bool | None = None) -> None:
        """Run cycles until stopped.

        Args:
            interval: Seconds between cycles (default ``daemon.poll_interval``)
            run_once: Run exactly one cycle (default ``daemon.run_once``)
        """
        interval = self.settings.daemon.poll_interval if interval is None else interval
        run_once = self.settings.daemon.run_once if run_once is None else run_once

        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                log.debug("signal_handler_unavailable", signal=sig.name)

        log.info("daemon_started", interval=interval, run_once=run_once)
        try:
            while not self.stopping:
                try:
                    await self.run_cycle()
                except AutopilotError as e:
                    log.error("daemon_error", error=e.message, exc_info=True)
                except Exception as e:
                    log.error("daemon_error_unexpected", error=str(e), exc_info=True)

                if run_once:
                    break
                await self._sleep(interval)
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            log.info("daemon_stopped", cycles=self.cycle_count)

    async def _sleep(self, interval: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
        except TimeoutError:
            pass
