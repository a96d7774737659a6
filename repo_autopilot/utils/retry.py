"""Retry helper for idempotent network reads.

Only reads are retried in place. Writes that fail are left for the next
daemon cycle, which re-derives what to do from the board.

Backoff Formula:
    delay = min(backoff_factor ** attempt_number, max_delay)
    For backoff_factor=2.0: 2s, 4s, 8s, ... capped at max_delay
"""

import asyncio
import functools
from collections.abc import Callable
from typing import Any

import httpx
import structlog

from repo_autopilot.exceptions import ExternalServiceError

log = structlog.get_logger(__name__)

# Responses worth asking again for: throttling and server-side failures.
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


def is_transient(error: Exception) -> bool:
    """Whether ``error`` is a network hiccup or a retryable HTTP status."""
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, ExternalServiceError):
        return error.status_code in TRANSIENT_STATUS_CODES
    return False


def async_retry(
    max_attempts: int = 3,
    backoff_factor: float = 2.0,
    max_delay: float = 30.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
    retry_if: Callable[[Exception], bool] | None = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Retry an async function with capped exponential backoff.

    Args:
        max_attempts: Maximum number of calls before giving up.
        backoff_factor: Base for the exponential delay between calls.
        max_delay: Upper bound on a single delay, in seconds.
        exceptions: Exception types considered for a retry.
        retry_if: Optional predicate; a caught exception it rejects is
            re-raised without retrying.

    Raises:
        The last caught exception once attempts run out, or the first one
        ``retry_if`` rejects.

    Example:
        >>> @async_retry(exceptions=(httpx.TransportError, SessionBackendError), retry_if=is_transient)
        ... async def get_session(session_id: str) -> SessionInfo:
        ...     ...
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 1
            while True:
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if retry_if is not None and not retry_if(e):
                        raise
                    if attempt >= max_attempts:
                        log.error("retry_exhausted", function=func.__name__, attempts=attempt, error=str(e))
                        raise

                    delay = min(backoff_factor**attempt, max_delay)
                    log.warning(
                        "retry_attempt",
                        function=func.__name__,
                        attempt=attempt,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)
                    attempt += 1

        return wrapper

    return decorator
