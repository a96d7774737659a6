"""
Logging configuration using structlog for structured, JSON-based logging.

The daemon logs one event per decision (stage skipped, item moved, session
started) so a cycle can be reconstructed from the log stream alone.
"""

import logging
from typing import Any

import structlog


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structured logging.

    Sets up structlog with a pipeline of processors that include timestamps,
    log levels, stack traces, and any context bound through
    ``structlog.contextvars`` (the daemon binds the cycle number there).

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Render JSON lines when True, human-readable console
            output otherwise
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    renderer: Any = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

