"""Tests for repo_autopilot/engine/stages/poll.py."""

import pytest

from repo_autopilot.engine.stages import PollStage
from repo_autopilot.engine.stages.poll import NO_BRANCH_CLEAN, NO_BRANCH_WITH_ERRORS, NO_SESSION, SESSION_FAILED
from repo_autopilot.engine.tracking import parse_tracking_record
from repo_autopilot.enums import SessionStatus
from repo_autopilot.models.domain import BoardSnapshot, BoardStatus, CycleResult, IssueState, ProjectItem, SessionInfo

PUSH_EVENT = {"type": "tool_use", "data": {"name": "Bash", "input": {"command": "git push -u origin claude/issue-4"}}}


def _session(status: SessionStatus, branches: list[str] | None = None) -> SessionInfo:
    return SessionInfo(session_id="sess_1", status=status, outcome_branches=branches or [])


@pytest.fixture
def stage(state, sessions, settings):
    return PollStage(state, sessions, settings)


@pytest.fixture
def working(make_item):
    return make_item(4, BoardStatus.IN_PROGRESS, title="Fix login redirect", session_id="sess_1")


class TestPollStage:
    """Tests for PollStage."""

    @pytest.mark.asyncio
    async def test_missing_session_reverts(self, stage, sessions, make_item):
        """Should revert an item that never got a session."""
        item = make_item(4, BoardStatus.IN_PROGRESS)
        result = CycleResult(cycle=1)

        await stage.run(BoardSnapshot.from_items([item]), result)

        assert item.status is BoardStatus.BACKLOG
        assert item.last_error == NO_SESSION
        sessions.get_session.assert_not_called()

    @pytest.mark.asyncio
    async def test_running_session_left_alone(self, stage, sessions, tracker, working):
        """Should wait for running sessions."""
        sessions.get_session.return_value = _session(SessionStatus.RUNNING)

        await stage.run(BoardSnapshot.from_items([working]), CycleResult(cycle=1))

        assert working.status is BoardStatus.IN_PROGRESS
        sessions.get_events.assert_not_called()
        tracker.add_comment.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_session_reverts(self, stage, sessions, working):
        """Should revert items whose session failed."""
        sessions.get_session.return_value = _session(SessionStatus.FAILED)
        result = CycleResult(cycle=1)

        await stage.run(BoardSnapshot.from_items([working]), result)

        assert working.status is BoardStatus.BACKLOG
        assert working.last_error == SESSION_FAILED
        assert working.session_id is None
        assert result.tasks_failed == 1

    @pytest.mark.asyncio
    async def test_unreachable_backend_degrades(self, stage, sessions, working):
        """Should leave the item in place and mark the cycle degraded."""
        sessions.get_session.side_effect = RuntimeError("connection reset")
        result = CycleResult(cycle=1)

        await stage.run(BoardSnapshot.from_items([working]), result)

        assert working.status is BoardStatus.IN_PROGRESS
        assert result.degraded is True
        assert result.tasks_failed == 0

    @pytest.mark.asyncio
    async def test_branch_found_opens_pr(self, stage, sessions, tracker, working, make_pr):
        """Should open a PR for the pushed branch and move to In review."""
        sessions.get_session.return_value = _session(SessionStatus.IDLE)
        sessions.get_events.return_value = [PUSH_EVENT]
        tracker.find_pull_request.return_value = None
        tracker.create_pull_request.return_value = make_pr(12)
        result = CycleResult(cycle=1)

        await stage.run(BoardSnapshot.from_items([working]), result)

        kwargs = tracker.create_pull_request.await_args.kwargs
        assert kwargs["head"] == "claude/issue-4"
        assert kwargs["base"] == "main"
        assert kwargs["body"].startswith("Closes #4")
        assert working.status is BoardStatus.IN_REVIEW
        assert working.pr_number == 12
        assert result.tasks_completed == 1
        record = parse_tracking_record(tracker.add_comment.await_args.args[1])
        assert record.stage == "in_review"
        assert record.branch == "claude/issue-4"
        assert record.pr_number == 12

    @pytest.mark.asyncio
    async def test_existing_pr_reused(self, stage, sessions, tracker, working, make_pr):
        """Should not open a second PR for the same branch."""
        sessions.get_session.return_value = _session(SessionStatus.COMPLETED, ["claude/issue-4"])
        sessions.get_events.return_value = []
        tracker.find_pull_request.return_value = make_pr(15)

        await stage.run(BoardSnapshot.from_items([working]), CycleResult(cycle=1))

        tracker.create_pull_request.assert_not_called()
        assert working.pr_number == 15

    @pytest.mark.asyncio
    async def test_no_branch_clean(self, stage, sessions, working):
        """Should explain that nothing was pushed."""
        sessions.get_session.return_value = _session(SessionStatus.IDLE)
        sessions.get_events.return_value = []

        await stage.run(BoardSnapshot.from_items([working]), CycleResult(cycle=1))

        assert working.status is BoardStatus.BACKLOG
        assert working.last_error == NO_BRANCH_CLEAN

    @pytest.mark.asyncio
    async def test_no_branch_with_errors(self, stage, sessions, working):
        """Should mention the session error when nothing was pushed."""
        sessions.get_session.return_value = _session(SessionStatus.IDLE)
        sessions.get_events.return_value = [{"type": "error", "data": {"message": "rate limited"}}]

        await stage.run(BoardSnapshot.from_items([working]), CycleResult(cycle=1))

        assert working.last_error == NO_BRANCH_WITH_ERRORS

    @pytest.mark.asyncio
    async def test_pr_failure_reverts(self, stage, sessions, tracker, working):
        """Should revert when the pull request cannot be opened."""
        sessions.get_session.return_value = _session(SessionStatus.IDLE)
        sessions.get_events.return_value = [PUSH_EVENT]
        tracker.find_pull_request.return_value = None
        tracker.create_pull_request.side_effect = RuntimeError("422 No commits between main and claude/issue-4")

        await stage.run(BoardSnapshot.from_items([working]), CycleResult(cycle=1))

        assert working.status is BoardStatus.BACKLOG
        assert "claude/issue-4" in working.last_error

    @pytest.mark.asyncio
    async def test_unreadable_tracking_is_left_alone(self, stage, state, tracker, sessions):
        """Should not revert an item whose tracking comments could not be read."""
        tracker.get_project_items.return_value = [
            ProjectItem(
                item_id="PVTI_4",
                issue_number=4,
                title="Fix login redirect",
                status_name="In progress",
                issue_state=IssueState.OPEN,
            )
        ]
        tracker.get_comments.side_effect = RuntimeError("502 Bad Gateway")
        snapshot = await state.snapshot()
        result = CycleResult(cycle=1)

        await stage.run(snapshot, result)

        item = snapshot.column(BoardStatus.IN_PROGRESS)[0]
        assert item.error_count == 0
        assert result.tasks_failed == 0
        sessions.get_session.assert_not_called()
        tracker.set_item_status.assert_not_called()
        tracker.add_comment.assert_not_called()
