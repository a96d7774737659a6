"""Read-only queries against a local git checkout."""

import subprocess
from pathlib import Path

import structlog

from repo_autopilot.exceptions import GitOperationError
from repo_autopilot.utils.async_subprocess import run_command

log = structlog.get_logger(__name__)

GIT_TIMEOUT_SECONDS = 30.0


async def _git(repo_path: Path | str, *args: str) -> str:
    try:
        stdout, _, _ = await run_command("git", *args, cwd=repo_path, timeout=GIT_TIMEOUT_SECONDS)
    except subprocess.CalledProcessError as e:
        raise GitOperationError(f"git {' '.join(args)} failed: {(e.stderr or '').strip()}") from e
    except (OSError, TimeoutError) as e:
        raise GitOperationError(f"git {' '.join(args)} could not run: {e}") from e
    return stdout.strip()


async def get_commit_hash(repo_path: Path | str) -> str:
    """Return the full hash of HEAD."""
    return await _git(repo_path, "rev-parse", "HEAD")


async def get_current_branch(repo_path: Path | str) -> str:
    """Return the checked-out branch name (``HEAD`` when detached)."""
    return await _git(repo_path, "rev-parse", "--abbrev-ref", "HEAD")


async def get_changed_files(repo_path: Path | str, from_commit: str, to_commit: str) -> list[str]:
    """List paths that differ between two commits.

    Args:
        repo_path: Repository root
        from_commit: Older commit hash
        to_commit: Newer commit hash

    Returns:
        Relative paths, one per changed file

    Raises:
        GitOperationError: If either commit is unknown or git fails
    """
    output = await _git(repo_path, "diff", "--name-only", from_commit, to_commit)
    files = [line.strip() for line in output.splitlines() if line.strip()]
    log.debug("git_changed_files", repo_path=str(repo_path), count=len(files))
    return files
