"""Tests for retry and git helpers in repo_autopilot/utils."""

import subprocess
from unittest.mock import AsyncMock

import httpx
import pytest

from repo_autopilot.exceptions import GitOperationError, SessionBackendError
from repo_autopilot.utils import git_info, retry
from repo_autopilot.utils.retry import async_retry


@pytest.fixture
def sleep(monkeypatch):
    mock = AsyncMock()
    monkeypatch.setattr(retry.asyncio, "sleep", mock)
    return mock


class TestAsyncRetry:
    """Tests for the async_retry decorator."""

    @pytest.mark.asyncio
    async def test_retries_until_success(self, sleep):
        """Should back off exponentially between attempts."""
        operation = AsyncMock(side_effect=[ConnectionError("reset"), ConnectionError("reset"), "ok"])
        wrapped = async_retry(max_attempts=3, backoff_factor=2.0, exceptions=(ConnectionError,))(operation)

        assert await wrapped() == "ok"
        assert [call.args[0] for call in sleep.await_args_list] == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_gives_up(self, sleep):
        """Should re-raise the last error once attempts run out."""
        operation = AsyncMock(side_effect=ConnectionError("reset"))
        wrapped = async_retry(max_attempts=2, exceptions=(ConnectionError,))(operation)

        with pytest.raises(ConnectionError):
            await wrapped()

        assert operation.await_count == 2

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self, sleep):
        """Should propagate exceptions outside the retry list immediately."""
        operation = AsyncMock(side_effect=ValueError("bad input"))
        wrapped = async_retry(max_attempts=3, exceptions=(ConnectionError,))(operation)

        with pytest.raises(ValueError):
            await wrapped()

        assert operation.await_count == 1
        sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_delay_is_capped(self, sleep):
        operation = AsyncMock(side_effect=[ConnectionError("reset")] * 3 + ["ok"])
        wrapped = async_retry(max_attempts=4, backoff_factor=10.0, max_delay=30.0, exceptions=(ConnectionError,))(
            operation
        )

        assert await wrapped() == "ok"
        assert [call.args[0] for call in sleep.await_args_list] == [10.0, 30.0, 30.0]

    @pytest.mark.asyncio
    async def test_retry_if_rejects(self, sleep):
        """Should re-raise errors the predicate does not consider transient."""
        error = SessionBackendError("Failed to get session", status_code=404)
        operation = AsyncMock(side_effect=error)
        wrapped = async_retry(exceptions=(SessionBackendError,), retry_if=retry.is_transient)(operation)

        with pytest.raises(SessionBackendError):
            await wrapped()

        assert operation.await_count == 1
        sleep.assert_not_called()

    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (httpx.ConnectError("refused"), True),
            (SessionBackendError("busy", status_code=503), True),
            (SessionBackendError("slow down", status_code=429), True),
            (SessionBackendError("denied", status_code=401), False),
            (ValueError("bad input"), False),
        ],
    )
    def test_is_transient(self, error, expected):
        assert retry.is_transient(error) is expected


class TestGitInfo:
    """Tests for git_info, with git itself stubbed out."""

    @pytest.mark.asyncio
    async def test_commit_hash(self, monkeypatch):
        run = AsyncMock(return_value=("9fceb02\n", "", 0))
        monkeypatch.setattr(git_info, "run_command", run)

        assert await git_info.get_commit_hash("/repo") == "9fceb02"
        assert run.await_args.args == ("git", "rev-parse", "HEAD")
        assert run.await_args.kwargs["cwd"] == "/repo"

    @pytest.mark.asyncio
    async def test_changed_files(self, monkeypatch):
        """Should return one path per non-empty line."""
        run = AsyncMock(return_value=("src/auth.py\n\nsrc/new.py\n", "", 0))
        monkeypatch.setattr(git_info, "run_command", run)

        files = await git_info.get_changed_files("/repo", "c1", "c2")

        assert files == ["src/auth.py", "src/new.py"]
        assert run.await_args.args == ("git", "diff", "--name-only", "c1", "c2")

    @pytest.mark.asyncio
    async def test_git_failure(self, monkeypatch):
        """Should wrap a failing git command in GitOperationError."""
        error = subprocess.CalledProcessError(128, ["git"], "", "fatal: not a git repository")
        monkeypatch.setattr(git_info, "run_command", AsyncMock(side_effect=error))

        with pytest.raises(GitOperationError, match="not a git repository"):
            await git_info.get_current_branch("/tmp")

    @pytest.mark.asyncio
    async def test_git_missing(self, monkeypatch):
        """Should wrap a missing git executable in GitOperationError."""
        monkeypatch.setattr(git_info, "run_command", AsyncMock(side_effect=FileNotFoundError("git")))

        with pytest.raises(GitOperationError, match="could not run"):
            await git_info.get_commit_hash("/repo")
