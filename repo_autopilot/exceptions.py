"""Custom exception hierarchy for the repo-autopilot daemon.

Every error raised by the daemon derives from a single base class so the
outermost loop can catch, log, and continue without crashing the process.

Exception Hierarchy:
    AutopilotError (base)
    ├── ConfigurationError
    ├── PrerequisiteError
    ├── GitOperationError
    ├── WorkflowError
    └── ExternalServiceError
        ├── SessionBackendError
        └── CircuitOpenError

Example Usage:
    >>> from repo_autopilot.exceptions import ConfigurationError
    >>> try:
    ...     settings = AutopilotSettings.from_yaml(path)
    ... except FileNotFoundError as e:
    ...     raise ConfigurationError(f"Config file not found: {path}") from e
"""


class AutopilotError(Exception):
    """Base exception for all repo-autopilot errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(AutopilotError):
    """Configuration-related errors.

    Raised when the configuration file is missing or invalid, or when the
    project board does not expose the expected status field and columns.
    """

    pass


class PrerequisiteError(AutopilotError):
    """A cycle stage cannot run because something it needs is missing.

    Examples:
        - No session backend credentials configured
        - No execution environment id
        - No GitHub token for reviews and merges
    """

    def __init__(self, message: str, stage: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            stage: Name of the stage that had to be skipped
        """
        self.stage = stage
        super().__init__(message)


class GitOperationError(AutopilotError):
    """Local git command failed (commit lookup, branch lookup, diff)."""

    pass


class WorkflowError(AutopilotError):
    """Board state machine errors.

    Raised when a transition between two columns is not part of the
    board workflow, or when an item is not present in the snapshot.
    """

    pass


class ExternalServiceError(AutopilotError):
    """External service communication errors.

    Raised when communication with the issue tracker or the session
    backend fails (HTTP errors, API failures, timeouts, rate limiting).
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            status_code: HTTP status code (if applicable)
            response_text: Response body text (if applicable)
        """
        self.status_code = status_code
        self.response_text = response_text

        full_message = message
        if status_code:
            full_message = f"{message} (HTTP {status_code})"

        super().__init__(full_message)
        self.message = message


class SessionBackendError(ExternalServiceError):
    """The coding-session backend rejected or failed a request."""

    pass


class CircuitOpenError(ExternalServiceError):
    """A call was short-circuited because the dependency's breaker is open."""

    def __init__(self, service: str) -> None:
        """Initialize exception.

        Args:
            service: Name of the dependency whose circuit is open
        """
        self.service = service
        super().__init__(f"Circuit open for {service}, call skipped")
