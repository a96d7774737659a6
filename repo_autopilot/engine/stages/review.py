"""Review stage: review, merge, or send back In-review pull requests."""

import structlog

from repo_autopilot.config.settings import AutopilotSettings
from repo_autopilot.engine.code_review import CodeReviewer, format_findings_comment, format_review_summary
from repo_autopilot.engine.merge_coordinator import MergeCoordinator
from repo_autopilot.engine.stages.base import CycleStage
from repo_autopilot.engine.state_manager import StateManager
from repo_autopilot.enums import ReviewVerdict, SessionStatus
from repo_autopilot.exceptions import PrerequisiteError
from repo_autopilot.models.domain import BoardItem, BoardSnapshot, BoardStatus, CycleResult, PullRequest
from repo_autopilot.providers.base import SessionBackend

log = structlog.get_logger(__name__)

CONFLICT_RESOLUTION = "conflict_resolution"
COMMENT_EVENT = ReviewVerdict.COMMENT.to_github_event()


class ReviewStage(CycleStage):
    """Review each In-review pull request and act on the verdict.

    - request changes: back to Ready with the findings as rework instructions
    - approve or comment: attempt the merge
        - merged: Done, issue closed
        - conflicts: start a resolution session and stay In review, or go
          back to Ready when one cannot be started (needs-attention once the
          resolution budget is spent)
        - anything else: left for the next cycle

    A review is submitted once per head commit, so deferred merges do not
    post a new review every cycle.
    """

    name = "review"

    def __init__(
        self,
        state: StateManager,
        sessions: SessionBackend,
        settings: AutopilotSettings,
        reviewer: CodeReviewer,
        merger: MergeCoordinator,
    ) -> None:
        super().__init__(state, sessions, settings)
        self.reviewer = reviewer
        self.merger = merger

    def check_prerequisites(self) -> None:
        if self.settings.github.token is None:
            raise PrerequisiteError("no GitHub token configured", stage=self.name)

    async def run(self, snapshot: BoardSnapshot, result: CycleResult) -> None:
        for item in self.workable(snapshot, BoardStatus.IN_REVIEW):
            try:
                await self._review(snapshot, item, result)
            except Exception as e:
                self.item_failed(item, e, result)

    async def _review(self, snapshot: BoardSnapshot, item: BoardItem, result: CycleResult) -> None:
        if await self._resolution_pending(item, result):
            log.debug("conflict_resolution_pending", issue=item.issue_number, session_id=item.session_id)
            return

        pr = await self._find_pull_request(item)
        if pr is None:
            item.last_error = "No pull request found for this task"
            await self.state.transition(snapshot, item, BoardStatus.READY)
            await self.state.record(item, "changes_requested")
            return

        if pr.merged:
            await self._complete(snapshot, item, result, pr.head_sha or None)
            return

        if pr.head_sha and pr.head_sha == item.reviewed_sha:
            log.debug("review_already_posted", issue=item.issue_number, pr=pr.number)
        else:
            review = await self.state.github(lambda: self.reviewer.review(pr.number))
            await self._submit(pr, format_review_summary(review), review.verdict.to_github_event())

            if not review.approved:
                item.reviewed_sha = None
                item.last_error = f"Review requested changes on #{pr.number}"
                await self.state.transition(snapshot, item, BoardStatus.READY)
                await self.state.record(item, "changes_requested", details=format_findings_comment(review))
                log.info("review_changes_requested", issue=item.issue_number, pr=pr.number)
                return

            item.reviewed_sha = pr.head_sha or None
            await self.state.record(item, "approved")

        await self._merge(snapshot, item, result, pr)

    async def _merge(self, snapshot: BoardSnapshot, item: BoardItem, result: CycleResult, pr: PullRequest) -> None:
        allowed = self.merger.can_attempt_resolution(item.conflict_attempts)
        attempt = await self.merger.attempt_merge(pr, allow_resolution=allowed)

        if attempt.merged:
            await self._complete(snapshot, item, result, attempt.sha)
            return

        if attempt.conflict_resolution_started:
            item.conflict_attempts += 1
            item.session_id = attempt.session_id
            await self.state.transition(snapshot, item, BoardStatus.IN_REVIEW)
            await self.state.record(item, CONFLICT_RESOLUTION, web_url=attempt.web_url)
            return

        if attempt.has_conflicts:
            item.last_error = attempt.error or attempt.reason or "Merge conflicts could not be resolved automatically"
            if not allowed:
                await self.flag_needs_attention(item)
            await self.state.transition(snapshot, item, BoardStatus.READY)
            await self.state.record(item, "conflict_unresolved")
            return

        log.info(
            "merge_not_completed",
            issue=item.issue_number,
            pr=pr.number,
            reason=attempt.reason,
            error=attempt.error,
        )

    async def _complete(
        self,
        snapshot: BoardSnapshot,
        item: BoardItem,
        result: CycleResult,
        sha: str | None,
    ) -> None:
        await self.state.transition(snapshot, item, BoardStatus.DONE)
        details = f"Merged as `{sha}`." if sha else None
        await self.state.record(item, "merged", details=details)
        await self.state.github(lambda: self.tracker.close_issue(item.issue_number))
        result.prs_merged += 1
        log.info("task_done", issue=item.issue_number, pr=item.pr_number, sha=sha)

    async def _resolution_pending(self, item: BoardItem, result: CycleResult) -> bool:
        """Whether a conflict-resolution session for the item is still running."""
        if item.stage != CONFLICT_RESOLUTION or not item.session_id:
            return False

        session_id = item.session_id
        session, degraded = await self.registry.breaker("sessions").execute_with_fallback(
            lambda: self.sessions.get_session(session_id), None
        )
        if degraded:
            result.degraded = True
            return True
        return session.status is SessionStatus.RUNNING

    async def _find_pull_request(self, item: BoardItem) -> PullRequest | None:
        if item.pr_number is not None:
            return await self.state.github(lambda: self.tracker.get_pull_request(item.pr_number))
        if item.branch:
            pr = await self.state.github(lambda: self.tracker.find_pull_request(item.branch))
            if pr is not None:
                item.pr_number = pr.number
            return pr
        return None

    async def _submit(self, pr: PullRequest, body: str, event: str) -> None:
        """Post the review. Failure does not change the verdict."""
        try:
            await self.state.github(lambda: self.tracker.create_review(pr.number, body, event))
            return
        except Exception as e:
            log.warning("review_submit_failed", pr=pr.number, review_event=event, error=str(e))
            if event == COMMENT_EVENT:
                return

        # GitHub refuses APPROVE and REQUEST_CHANGES on a PR opened by the same account.
        try:
            await self.state.github(lambda: self.tracker.create_review(pr.number, body, COMMENT_EVENT))
        except Exception as e:
            log.warning("review_submit_failed", pr=pr.number, review_event=COMMENT_EVENT, error=str(e))
