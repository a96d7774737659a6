"""Promote stage: move the oldest backlog items into Ready."""

import structlog

from repo_autopilot.engine.stages.base import CycleStage
from repo_autopilot.models.domain import BoardSnapshot, BoardStatus, CycleResult

log = structlog.get_logger(__name__)


class PromotionStage(CycleStage):
    """Fill free Ready slots, oldest issue first.

    Items that already failed ``daemon.max_task_attempts`` times stay in
    Backlog and are labeled for human attention instead. Labeled items are
    not promoted until the label is removed.
    """

    name = "promote"

    async def run(self, snapshot: BoardSnapshot, result: CycleResult) -> None:
        slots = self.settings.daemon.max_ready - snapshot.count(BoardStatus.READY)
        if slots <= 0:
            log.debug("ready_column_full", ready=snapshot.count(BoardStatus.READY))
            return

        max_attempts = self.settings.daemon.max_task_attempts
        for item in self.workable(snapshot, BoardStatus.BACKLOG, skip_flagged=True):
            if slots <= 0:
                break
            try:
                if item.error_count >= max_attempts:
                    await self.flag_needs_attention(item)
                    continue

                await self.state.transition(snapshot, item, BoardStatus.READY)
            except Exception as e:
                self.item_failed(item, e, result)
                continue

            slots -= 1
            result.tasks_promoted += 1
