"""Circuit breaker and per-dependency health tracking.

Every call the daemon makes to the issue tracker, the session backend, or
local git goes through a :class:`CircuitBreaker`. When a dependency keeps
failing the breaker opens and callers receive their declared fallback
immediately, so one outage degrades a cycle instead of crashing the process.

State Machine:
    closed    --(failure_threshold consecutive failures)--> open
    open      --(reset_timeout elapsed since opening)-----> half-open
    half-open --(success_threshold consecutive successes)-> closed
    half-open --(any failure)-----------------------------> open

While half-open only one trial call is allowed in flight; concurrent callers
are short-circuited until the trial resolves.

Example:
    >>> breaker = CircuitBreaker("github", failure_threshold=5, reset_timeout=60.0)
    >>> issues, degraded = await breaker.execute_with_fallback(
    ...     lambda: tracker.get_issues(), fallback=[]
    ... )
"""

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TypeVar

import structlog

from repo_autopilot.enums import CircuitState, HealthStatus
from repo_autopilot.exceptions import CircuitOpenError

log = structlog.get_logger(__name__)

T = TypeVar("T")

# Remaining API budget below which a dependency is reported as degraded.
RATE_LIMIT_LOW_WATER = 100


@dataclass
class ServiceHealth:
    """Point-in-time health of one external dependency."""

    service: str
    status: HealthStatus
    circuit_state: CircuitState
    consecutive_failures: int
    consecutive_successes: int
    rate_limit_remaining: int | None
    last_success: datetime | None
    last_check: datetime
    last_error: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Serialize for logs and CLI output."""
        return {
            "service": self.service,
            "status": str(self.status),
            "circuit_state": str(self.circuit_state),
            "consecutive_failures": self.consecutive_failures,
            "consecutive_successes": self.consecutive_successes,
            "rate_limit_remaining": self.rate_limit_remaining,
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "last_check": self.last_check.isoformat(),
            "last_error": self.last_error,
        }


class CircuitBreaker:
    """Three-state circuit breaker guarding a single dependency.

    Attributes:
        name: Dependency name used in logs and health reports
        failure_threshold: Consecutive failures that open a closed circuit
        reset_timeout: Seconds an open circuit waits before allowing a trial
        success_threshold: Consecutive half-open successes that close it again
        rate_limit_remaining: Last API budget reported by the dependency
        last_success: Wall-clock time of the last successful call
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        success_threshold: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.success_threshold = success_threshold
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False

        self.rate_limit_remaining: int | None = None
        self.last_success: datetime | None = None
        self.last_error: str | None = None

    @property
    def state(self) -> CircuitState:
        """Current state, without evaluating the reset timeout."""
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def consecutive_successes(self) -> int:
        return self._successes

    def can_execute(self) -> bool:
        """Decide whether a call may go through right now.

        An open circuit whose reset timeout has elapsed moves to half-open
        here, and the caller becomes the single trial.
        """
        if self._state is CircuitState.CLOSED:
            return True

        if self._state is CircuitState.OPEN:
            opened_at = self._opened_at if self._opened_at is not None else self._clock()
            if self._clock() - opened_at < self.reset_timeout:
                return False
            self._transition(CircuitState.HALF_OPEN)

        return not self._trial_in_flight

    def record_success(self) -> None:
        """Register a successful call."""
        self._failures = 0
        self._successes += 1
        self.last_success = datetime.now(UTC)

        if self._state is CircuitState.HALF_OPEN and self._successes >= self.success_threshold:
            self._transition(CircuitState.CLOSED)

    def record_failure(self, error: BaseException | str | None = None) -> None:
        """Register a failed call."""
        self._successes = 0
        self._failures += 1
        if error is not None:
            self.last_error = str(error)

        if self._state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
        elif self._state is CircuitState.CLOSED and self._failures >= self.failure_threshold:
            self._transition(CircuitState.OPEN)

    def record_rate_limit(self, remaining: int | None) -> None:
        """Remember the API budget reported by the last response."""
        self.rate_limit_remaining = remaining

    def reset(self) -> None:
        """Force the circuit closed and clear all counters."""
        self._failures = 0
        self._successes = 0
        self._trial_in_flight = False
        if self._state is not CircuitState.CLOSED:
            self._transition(CircuitState.CLOSED)

    async def execute_with_fallback(self, operation: Callable[[], Awaitable[T]], fallback: T) -> tuple[T, bool]:
        """Run ``operation`` through the breaker.

        Args:
            operation: Zero-argument coroutine factory performing the call
            fallback: Value returned when the call is skipped or fails

        Returns:
            Tuple of (value, degraded). ``degraded`` is True whenever the
            fallback was substituted for a real result.
        """
        if not self.can_execute():
            log.debug("circuit_short_circuited", service=self.name, state=str(self._state))
            return fallback, True

        trial = self._state is CircuitState.HALF_OPEN
        if trial:
            self._trial_in_flight = True
        try:
            value = await operation()
        except Exception as e:
            self.record_failure(e)
            log.warning(
                "degraded_fallback_used",
                service=self.name,
                state=str(self._state),
                error=str(e),
            )
            return fallback, True
        finally:
            if trial:
                self._trial_in_flight = False

        self.record_success()
        return value, False

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` through the breaker, propagating failures.

        For call sites with no meaningful fallback value.

        Raises:
            CircuitOpenError: If the circuit does not allow the call
            Exception: Whatever ``operation`` raised, after recording it
        """
        if not self.can_execute():
            raise CircuitOpenError(self.name)

        trial = self._state is CircuitState.HALF_OPEN
        if trial:
            self._trial_in_flight = True
        try:
            value = await operation()
        except Exception as e:
            self.record_failure(e)
            raise
        finally:
            if trial:
                self._trial_in_flight = False

        self.record_success()
        return value

    def health(self) -> ServiceHealth:
        """Snapshot this dependency's health."""
        if self._state is CircuitState.OPEN:
            status = HealthStatus.UNAVAILABLE
        elif self._state is CircuitState.HALF_OPEN or self._failures > 0:
            status = HealthStatus.DEGRADED
        elif self.rate_limit_remaining is not None and self.rate_limit_remaining < RATE_LIMIT_LOW_WATER:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        return ServiceHealth(
            service=self.name,
            status=status,
            circuit_state=self._state,
            consecutive_failures=self._failures,
            consecutive_successes=self._successes,
            rate_limit_remaining=self.rate_limit_remaining,
            last_success=self.last_success,
            last_check=datetime.now(UTC),
            last_error=self.last_error,
        )

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state

        if new_state is CircuitState.OPEN:
            self._opened_at = self._clock()
        elif new_state is CircuitState.HALF_OPEN:
            self._successes = 0
        else:
            self._failures = 0
            self._opened_at = None

        log.info(
            "circuit_state_changed",
            service=self.name,
            from_state=str(old_state),
            to_state=str(new_state),
            failures=self._failures,
        )


class ServiceHealthRegistry:
    """One breaker per named dependency, created on first use."""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        success_threshold: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.success_threshold = success_threshold
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def breaker(self, service: str) -> CircuitBreaker:
        """Return the breaker for ``service``, creating it if needed."""
        if service not in self._breakers:
            self._breakers[service] = CircuitBreaker(
                service,
                failure_threshold=self.failure_threshold,
                reset_timeout=self.reset_timeout,
                success_threshold=self.success_threshold,
                clock=self._clock,
            )
        return self._breakers[service]

    def snapshot(self) -> dict[str, ServiceHealth]:
        return {name: breaker.health() for name, breaker in self._breakers.items()}

    def overall_status(self) -> HealthStatus:
        """Worst status across all known dependencies."""
        statuses = [health.status for health in self.snapshot().values()]
        if not statuses:
            return HealthStatus.HEALTHY
        return max(statuses, key=lambda status: status.severity)
