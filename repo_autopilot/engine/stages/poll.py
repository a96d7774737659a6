"""Poll stage: check sessions of In-progress items and open pull requests."""

import structlog

from repo_autopilot.engine.branch_inference import BranchInferrer, has_error_events
from repo_autopilot.engine.stages.base import CycleStage
from repo_autopilot.enums import SessionStatus
from repo_autopilot.models.domain import BoardItem, BoardSnapshot, BoardStatus, CycleResult

log = structlog.get_logger(__name__)

NO_SESSION = "No session was recorded for this task"
SESSION_FAILED = "The session failed"
NO_BRANCH_WITH_ERRORS = "The session reported an error and no pushed branch was found"
NO_BRANCH_CLEAN = "The session finished without errors but nothing was pushed"


class PollStage(CycleStage):
    """Advance finished sessions to In review, or revert them to Backlog.

    Session status comes through the ``sessions`` breaker. When it is open,
    items are left in place and polled again next cycle, since a missing
    answer must not be mistaken for a finished session with no branch.
    """

    name = "poll"

    @property
    def inferrer(self) -> BranchInferrer:
        return BranchInferrer(self.settings.sessions.agent_name)

    async def run(self, snapshot: BoardSnapshot, result: CycleResult) -> None:
        inferrer = self.inferrer
        for item in self.workable(snapshot, BoardStatus.IN_PROGRESS):
            try:
                await self._poll(snapshot, item, result, inferrer)
            except Exception as e:
                self.item_failed(item, e, result)

    async def _poll(
        self,
        snapshot: BoardSnapshot,
        item: BoardItem,
        result: CycleResult,
        inferrer: BranchInferrer,
    ) -> None:
        if not item.session_id:
            await self.revert_to_backlog(snapshot, item, result, NO_SESSION)
            return

        session_id = item.session_id
        breaker = self.registry.breaker("sessions")
        session, degraded = await breaker.execute_with_fallback(lambda: self.sessions.get_session(session_id), None)
        if degraded:
            result.degraded = True
            return

        log.debug("session_polled", issue=item.issue_number, session_id=session_id, status=str(session.status))

        if session.status is SessionStatus.FAILED:
            await self.revert_to_backlog(snapshot, item, result, SESSION_FAILED)
            return

        if not session.status.is_finished:
            return

        events, degraded = await breaker.execute_with_fallback(lambda: self.sessions.get_events(session_id), None)
        if degraded:
            result.degraded = True
            return

        inference = inferrer.infer(session, events)
        if not inference.found:
            reason = NO_BRANCH_WITH_ERRORS if has_error_events(events) else NO_BRANCH_CLEAN
            await self.revert_to_backlog(snapshot, item, result, reason)
            return

        branch = inference.branch
        log.info("branch_inferred", issue=item.issue_number, branch=branch, source=inference.source)
        item.branch = branch

        try:
            pr = await self.state.github(lambda: self.tracker.find_pull_request(branch))
            if pr is None:
                pr = await self.state.github(
                    lambda: self.tracker.create_pull_request(
                        title=item.title,
                        body=f"Closes #{item.issue_number}\n\nSession: {session_id}",
                        head=branch,
                        base=self.settings.repository.default_branch,
                    )
                )
        except Exception as e:
            log.error("pull_request_failed", issue=item.issue_number, branch=branch, error=str(e))
            await self.revert_to_backlog(snapshot, item, result, f"Could not open a pull request for `{branch}`: {e}")
            return

        item.pr_number = pr.number
        item.reviewed_sha = None
        await self.state.transition(snapshot, item, BoardStatus.IN_REVIEW)
        await self.state.record(item, "in_review")
        result.tasks_completed += 1
