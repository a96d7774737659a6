"""Tests for repo_autopilot/engine/merge_coordinator.py."""

import pytest

from repo_autopilot.config.settings import MergeConfig
from repo_autopilot.engine.merge_coordinator import (
    BLOCKED,
    NO_PR_FOUND,
    PENDING,
    RESOLUTION_EXHAUSTED,
    MergeCoordinator,
)
from repo_autopilot.models.domain import MergeOutcome


@pytest.fixture
def coordinator(tracker, sessions, registry, settings):
    tracker.get_combined_status.return_value = "success"
    tracker.merge_pull_request.return_value = MergeOutcome(merged=True, sha="f00d")
    return MergeCoordinator(tracker, sessions, registry, settings.repository, settings.merge)


class TestAttemptMerge:
    """Tests for MergeCoordinator.attempt_merge."""

    @pytest.mark.asyncio
    async def test_clean_pr_merged(self, coordinator, tracker, make_pr):
        """Should squash-merge and delete the source branch."""
        result = await coordinator.attempt_merge(make_pr(12))

        assert result.merged is True
        assert result.sha == "f00d"
        tracker.merge_pull_request.assert_awaited_once_with(12, "Fix login redirect (#12)", method="squash")
        tracker.delete_branch.assert_awaited_once_with("claude/issue-4")

    @pytest.mark.asyncio
    async def test_branch_kept_when_configured(self, tracker, sessions, registry, settings, make_pr):
        """Should keep the branch when delete_branch_after_merge is off."""
        tracker.get_combined_status.return_value = "success"
        tracker.merge_pull_request.return_value = MergeOutcome(merged=True, sha="f00d")
        coordinator = MergeCoordinator(
            tracker,
            sessions,
            registry,
            settings.repository,
            MergeConfig(delete_branch_after_merge=False, merge_method="rebase"),
        )

        await coordinator.attempt_merge(make_pr(12))

        tracker.merge_pull_request.assert_awaited_once_with(12, "Fix login redirect (#12)", method="rebase")
        tracker.delete_branch.assert_not_called()

    @pytest.mark.asyncio
    async def test_branch_delete_failure_ignored(self, coordinator, tracker, make_pr):
        """Should report the merge even when branch deletion fails."""
        tracker.delete_branch.side_effect = RuntimeError("protected branch")

        result = await coordinator.attempt_merge(make_pr(12))

        assert result.merged is True

    @pytest.mark.asyncio
    async def test_mergeable_unknown_deferred(self, coordinator, tracker, make_pr):
        """Should defer while GitHub is still computing mergeability."""
        result = await coordinator.attempt_merge(make_pr(12, mergeable=None))

        assert result.merged is False
        assert result.deferred is True
        assert result.reason == PENDING
        tracker.merge_pull_request.assert_not_called()

    @pytest.mark.asyncio
    async def test_failing_checks_deferred(self, coordinator, tracker, make_pr):
        """Should defer while required checks fail or are pending."""
        tracker.get_combined_status.return_value = "pending"

        result = await coordinator.attempt_merge(make_pr(12))

        assert result.reason == BLOCKED
        tracker.get_combined_status.assert_awaited_once_with("abc123")
        tracker.merge_pull_request.assert_not_called()

    @pytest.mark.asyncio
    async def test_blocked_state_deferred(self, coordinator, tracker, make_pr):
        """Should defer when GitHub reports the PR as blocked."""
        result = await coordinator.attempt_merge(make_pr(12, mergeable_state="blocked"))

        assert result.reason == BLOCKED
        tracker.get_combined_status.assert_not_called()

    @pytest.mark.asyncio
    async def test_merge_refused(self, coordinator, tracker, make_pr):
        """Should surface the tracker's message when the merge is refused."""
        tracker.merge_pull_request.return_value = MergeOutcome(merged=False, message="Base branch was modified")

        result = await coordinator.attempt_merge(make_pr(12))

        assert result.merged is False
        assert result.error == "Base branch was modified"
        tracker.delete_branch.assert_not_called()

    @pytest.mark.asyncio
    async def test_merge_exception_captured(self, coordinator, tracker, make_pr):
        """Should turn a merge exception into an error result."""
        tracker.merge_pull_request.side_effect = RuntimeError("405 Method Not Allowed")

        result = await coordinator.attempt_merge(make_pr(12))

        assert result.merged is False
        assert "405" in result.error


class TestConflictResolution:
    """Tests for conflict handling."""

    @pytest.mark.asyncio
    async def test_conflict_starts_session_on_same_branch(self, coordinator, sessions, make_pr):
        """Should start a resolution session that pushes to the PR branch."""
        result = await coordinator.attempt_merge(make_pr(12, mergeable=False, mergeable_state="dirty"))

        assert result.has_conflicts is True
        assert result.conflict_resolution_started is True
        assert result.session_id == "sess_new"
        prompt, repo_url, branch_prefix = sessions.create_session.await_args.args
        assert branch_prefix == "claude/issue-4"
        assert repo_url == "https://github.com/acme/widgets"
        assert "git merge origin/main" in prompt
        assert "Never create a new branch" in prompt

    @pytest.mark.asyncio
    async def test_dirty_state_is_conflict(self, coordinator, sessions, make_pr):
        """Should treat a dirty mergeable state as a conflict."""
        result = await coordinator.attempt_merge(make_pr(12, mergeable=True, mergeable_state="dirty"))

        assert result.conflict_resolution_started is True

    @pytest.mark.asyncio
    async def test_resolution_exhausted(self, coordinator, sessions, make_pr):
        """Should not start a session once attempts are used up."""
        result = await coordinator.attempt_merge(make_pr(12, mergeable=False), allow_resolution=False)

        assert result.has_conflicts is True
        assert result.conflict_resolution_started is False
        assert result.reason == RESOLUTION_EXHAUSTED
        sessions.create_session.assert_not_called()

    @pytest.mark.asyncio
    async def test_sessions_not_configured(self, coordinator, sessions, make_pr):
        """Should report the conflict without a session when the backend is unavailable."""
        sessions.is_configured = False

        result = await coordinator.attempt_merge(make_pr(12, mergeable=False))

        assert result.has_conflicts is True
        assert result.conflict_resolution_started is False
        sessions.create_session.assert_not_called()

    @pytest.mark.asyncio
    async def test_session_creation_failure(self, coordinator, sessions, make_pr):
        """Should report the error when the session cannot be created."""
        sessions.create_session.side_effect = RuntimeError("503")

        result = await coordinator.attempt_merge(make_pr(12, mergeable=False))

        assert result.has_conflicts is True
        assert result.conflict_resolution_started is False
        assert result.error == "503"

    def test_can_attempt_resolution(self, coordinator):
        """Should allow up to max_conflict_retries attempts."""
        assert coordinator.can_attempt_resolution(0) is True
        assert coordinator.can_attempt_resolution(2) is True
        assert coordinator.can_attempt_resolution(3) is False


class TestMergeSequentially:
    """Tests for MergeCoordinator.merge_sequentially."""

    @pytest.mark.asyncio
    async def test_order_preserved_and_failures_isolated(self, coordinator, tracker, make_pr):
        """Should merge in order and keep going after a failure."""
        tracker.get_pull_request.side_effect = lambda number: make_pr(number, head=f"claude/issue-{number}")
        tracker.find_pull_request.return_value = None
        tracker.merge_pull_request.side_effect = [
            RuntimeError("conflict on base"),
            MergeOutcome(merged=True, sha="bead"),
        ]

        results = await coordinator.merge_sequentially(
            [("claude/issue-1", 1), ("claude/missing", None), ("claude/issue-3", 3)]
        )

        assert list(results) == ["claude/issue-1", "claude/missing", "claude/issue-3"]
        assert results["claude/issue-1"].merged is False
        assert "conflict on base" in results["claude/issue-1"].error
        assert results["claude/missing"].error == NO_PR_FOUND
        assert results["claude/issue-3"].merged is True
        assert [call.args[0] for call in tracker.merge_pull_request.await_args_list] == [1, 3]

    @pytest.mark.asyncio
    async def test_lookup_failure_recorded(self, coordinator, tracker):
        """Should record lookup errors against the branch."""
        tracker.get_pull_request.side_effect = RuntimeError("404 Not Found")

        results = await coordinator.merge_sequentially([("claude/issue-1", 1)])

        assert results["claude/issue-1"].merged is False
        assert results["claude/issue-1"].pr_number == 1
        assert "404" in results["claude/issue-1"].error
