"""Enumerations for repo-autopilot service health and session states."""

from enum import Enum


class CircuitState(str, Enum):
    """States of a circuit breaker guarding one external dependency."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"

    def __str__(self) -> str:
        return self.value


class HealthStatus(str, Enum):
    """Coarse health of a dependency, derived from its breaker.

    Ordered from best to worst so the overall status of several
    dependencies is simply the worst of them.
    """

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"

    def __str__(self) -> str:
        return self.value

    @property
    def severity(self) -> int:
        """Numeric rank, higher is worse."""
        return [HealthStatus.HEALTHY, HealthStatus.DEGRADED, HealthStatus.UNAVAILABLE].index(self)


class SessionStatus(str, Enum):
    """Remote coding-session lifecycle states reported by the backend."""

    RUNNING = "running"
    IDLE = "idle"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value

    @property
    def is_finished(self) -> bool:
        """Whether the session has stopped producing work."""
        return self in (SessionStatus.IDLE, SessionStatus.COMPLETED)


class ReviewVerdict(str, Enum):
    """Outcome of an automated code review."""

    APPROVE = "approve"
    REQUEST_CHANGES = "request_changes"
    COMMENT = "comment"

    def __str__(self) -> str:
        return self.value

    def to_github_event(self) -> str:
        """Map to the review event name used by the GitHub API."""
        return {
            ReviewVerdict.APPROVE: "APPROVE",
            ReviewVerdict.REQUEST_CHANGES: "REQUEST_CHANGES",
            ReviewVerdict.COMMENT: "COMMENT",
        }[self]
