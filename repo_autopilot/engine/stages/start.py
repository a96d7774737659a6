"""Start stage: launch remote sessions for Ready items."""

import structlog

from repo_autopilot.engine.code_review import extract_review_feedback
from repo_autopilot.engine.prompts import build_rework_prompt, build_task_prompt
from repo_autopilot.engine.stages.base import CycleStage
from repo_autopilot.exceptions import PrerequisiteError
from repo_autopilot.models.domain import BoardItem, BoardSnapshot, BoardStatus, CycleResult

log = structlog.get_logger(__name__)


class StartStage(CycleStage):
    """Move Ready items to In progress and create a session for each.

    The board status changes before the session is requested, so a crash in
    between leaves a visible In-progress item with no session rather than a
    session nobody tracks. The poll stage reverts such items.

    An item whose tracking record already names a branch is rework: the
    session continues on that branch and the prompt carries the latest
    review findings.

    Items labeled needs-attention stay in Ready until a human removes the
    label.
    """

    name = "start"

    def check_prerequisites(self) -> None:
        if not self.sessions.is_configured:
            raise PrerequisiteError(
                "session backend has no API key or environment id",
                stage=self.name,
            )

    async def run(self, snapshot: BoardSnapshot, result: CycleResult) -> None:
        slots = self.settings.daemon.max_in_progress - snapshot.count(BoardStatus.IN_PROGRESS)
        if slots <= 0:
            log.debug("in_progress_column_full", in_progress=snapshot.count(BoardStatus.IN_PROGRESS))
            return

        for item in self.workable(snapshot, BoardStatus.READY, skip_flagged=True)[:slots]:
            try:
                await self.state.transition(snapshot, item, BoardStatus.IN_PROGRESS)
            except Exception as e:
                self.item_failed(item, e, result)
                continue

            try:
                await self._start(snapshot, item, result)
            except Exception as e:
                self.item_failed(item, e, result)

    async def _start(self, snapshot: BoardSnapshot, item: BoardItem, result: CycleResult) -> None:
        repository = self.settings.repository
        rework = item.branch is not None

        try:
            issue = await self.state.github(lambda: self.tracker.get_issue(item.issue_number))
            repo_name = f"{repository.owner}/{repository.name}"
            if rework:
                comments = await self.state.github(lambda: self.tracker.get_comments(item.issue_number))
                feedback = extract_review_feedback(comments, author=self.tracker.login)
                prompt = build_rework_prompt(issue, repo_name, item.branch, feedback)
                branch_prefix = item.branch
            else:
                branch_prefix = f"{self.settings.sessions.agent_name}/issue-{item.issue_number}"
                prompt = build_task_prompt(issue, repo_name, branch_prefix)

            handle = await self.registry.breaker("sessions").execute(
                lambda: self.sessions.create_session(
                    prompt,
                    repository.url,
                    branch_prefix,
                    title=f"#{item.issue_number}: {item.title}",
                )
            )
        except Exception as e:
            log.error("session_start_failed", issue=item.issue_number, error=str(e))
            await self.revert_to_backlog(snapshot, item, result, f"Could not start a session: {e}")
            return

        item.session_id = handle.session_id
        await self.state.record(item, "rework" if rework else "started", web_url=handle.web_url)
        result.tasks_started += 1
        log.info(
            "session_started",
            issue=item.issue_number,
            session_id=handle.session_id,
            branch_prefix=branch_prefix,
            rework=rework,
        )
