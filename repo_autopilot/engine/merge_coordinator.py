"""
Merge coordination and automated conflict resolution.

This module decides what to do with an approved pull request:

- ``mergeable`` not computed yet: defer, GitHub computes it asynchronously
- conflicts: start a session that merges the base branch into the PR branch
  and pushes the same branch, bounded by ``merge.max_conflict_retries``
- blocked by required checks: defer
- otherwise: merge, then best-effort delete the source branch

Merges against a shared base are strictly sequential. Each merge changes the
base the next pull request is evaluated against.

Example:
    >>> coordinator = MergeCoordinator(tracker, sessions, registry, repository)
    >>> results = await coordinator.merge_sequentially([("claude/issue-4", 12), ("claude/issue-9", None)])
    >>> results["claude/issue-4"].merged
    True
"""

from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from repo_autopilot.config.settings import MergeConfig, RepositoryConfig
from repo_autopilot.engine.prompts import build_conflict_resolution_prompt
from repo_autopilot.models.domain import MergeAttemptResult, PullRequest
from repo_autopilot.providers.base import IssueTracker, SessionBackend
from repo_autopilot.utils.circuit_breaker import ServiceHealthRegistry

log = structlog.get_logger(__name__)

T = TypeVar("T")

PENDING = "pending"
BLOCKED = "blocked by status checks"
RESOLUTION_EXHAUSTED = "conflict resolution attempts exhausted"
NO_PR_FOUND = "No PR found for branch"


class MergeCoordinator:
    """Attempts merges and launches bounded conflict resolution."""

    def __init__(
        self,
        tracker: IssueTracker,
        sessions: SessionBackend,
        registry: ServiceHealthRegistry,
        repository: RepositoryConfig,
        config: MergeConfig | None = None,
    ):
        self.tracker = tracker
        self.sessions = sessions
        self.registry = registry
        self.repository = repository
        self.config = config or MergeConfig()

    def can_attempt_resolution(self, attempts: int) -> bool:
        """Whether another automated resolution may be started."""
        return attempts < self.config.max_conflict_retries

    async def attempt_merge(self, pr: PullRequest, allow_resolution: bool = True) -> MergeAttemptResult:
        """Try to merge ``pr``.

        Args:
            pr: Pull request, freshly fetched so ``mergeable`` is current
            allow_resolution: False once the item used up its resolution attempts

        Returns:
            MergeAttemptResult describing the merge, the deferral, or the conflict
        """
        if pr.mergeable is None:
            log.info("merge_deferred", pr=pr.number, reason=PENDING)
            return MergeAttemptResult(merged=False, pr_number=pr.number, reason=PENDING)

        if pr.mergeable is False or pr.mergeable_state == "dirty":
            log.info("merge_conflict_detected", pr=pr.number, branch=pr.head)
            if not allow_resolution:
                return MergeAttemptResult(
                    merged=False,
                    pr_number=pr.number,
                    has_conflicts=True,
                    reason=RESOLUTION_EXHAUSTED,
                )
            return await self.start_conflict_resolution(pr)

        if pr.mergeable_state == "blocked" or await self._checks_blocking(pr):
            log.info("merge_deferred", pr=pr.number, reason=BLOCKED)
            return MergeAttemptResult(merged=False, pr_number=pr.number, reason=BLOCKED)

        return await self._merge(pr)

    async def start_conflict_resolution(self, pr: PullRequest) -> MergeAttemptResult:
        """Launch a session that resolves conflicts on the PR's own branch."""
        if not pr.head or not self.sessions.is_configured:
            log.warning(
                "conflict_resolution_unavailable",
                pr=pr.number,
                has_branch=bool(pr.head),
                sessions_configured=self.sessions.is_configured,
            )
            return MergeAttemptResult(merged=False, pr_number=pr.number, has_conflicts=True)

        prompt = build_conflict_resolution_prompt(
            repo_full_name=f"{self.repository.owner}/{self.repository.name}",
            branch=pr.head,
            base_branch=pr.base or self.repository.default_branch,
            pr_number=pr.number,
            pr_title=pr.title,
        )
        try:
            handle = await self.registry.breaker("sessions").execute(
                lambda: self.sessions.create_session(
                    prompt,
                    self.repository.url,
                    pr.head,
                    title=f"Resolve conflicts in #{pr.number}",
                )
            )
        except Exception as e:
            log.error("conflict_resolution_start_failed", pr=pr.number, error=str(e))
            return MergeAttemptResult(merged=False, pr_number=pr.number, has_conflicts=True, error=str(e))

        log.info("conflict_resolution_started", pr=pr.number, session_id=handle.session_id)
        return MergeAttemptResult(
            merged=False,
            pr_number=pr.number,
            has_conflicts=True,
            conflict_resolution_started=True,
            session_id=handle.session_id,
            web_url=handle.web_url,
        )

    async def merge_sequentially(self, pairs: list[tuple[str, int | None]]) -> dict[str, MergeAttemptResult]:
        """Merge ``(branch, pr_number)`` pairs strictly in order.

        The PR is looked up by number when given, otherwise by head branch.
        A failure is recorded for its branch and never stops later pairs.
        """
        results: dict[str, MergeAttemptResult] = {}
        for branch, pr_number in pairs:
            try:
                if pr_number is not None:
                    pr = await self._github(lambda n=pr_number: self.tracker.get_pull_request(n))
                else:
                    pr = await self._github(lambda b=branch: self.tracker.find_pull_request(b))

                if pr is None:
                    results[branch] = MergeAttemptResult(merged=False, error=NO_PR_FOUND)
                    continue

                results[branch] = await self.attempt_merge(pr)
            except Exception as e:
                log.error("sequential_merge_failed", branch=branch, error=str(e))
                results[branch] = MergeAttemptResult(merged=False, pr_number=pr_number, error=str(e))

        log.info(
            "sequential_merge_complete",
            total=len(results),
            merged=sum(1 for result in results.values() if result.merged),
        )
        return results

    async def _checks_blocking(self, pr: PullRequest) -> bool:
        if not pr.head_sha:
            return False
        state = await self._github(lambda: self.tracker.get_combined_status(pr.head_sha))
        return state in ("failure", "error", "pending")

    async def _merge(self, pr: PullRequest) -> MergeAttemptResult:
        title = f"{pr.title} (#{pr.number})"
        try:
            outcome = await self._github(
                lambda: self.tracker.merge_pull_request(pr.number, title, method=self.config.merge_method)
            )
        except Exception as e:
            log.error("merge_failed", pr=pr.number, error=str(e))
            return MergeAttemptResult(merged=False, pr_number=pr.number, error=str(e))

        if not outcome.merged:
            log.warning("merge_refused", pr=pr.number, message=outcome.message)
            return MergeAttemptResult(
                merged=False,
                pr_number=pr.number,
                error=outcome.message or "Merge was not performed",
            )

        log.info("pr_merged", pr=pr.number, sha=outcome.sha)
        if self.config.delete_branch_after_merge and pr.head:
            try:
                await self._github(lambda: self.tracker.delete_branch(pr.head))
            except Exception as e:
                log.warning("branch_delete_failed", branch=pr.head, error=str(e))

        return MergeAttemptResult(merged=True, pr_number=pr.number, sha=outcome.sha)

    async def _github(self, operation: Callable[[], Awaitable[T]]) -> T:
        breaker = self.registry.breaker("github")
        try:
            return await breaker.execute(operation)
        finally:
            if isinstance(self.tracker.rate_limit_remaining, int):
                breaker.record_rate_limit(self.tracker.rate_limit_remaining)
