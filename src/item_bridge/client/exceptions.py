"""Custom exceptions for Item Bridge.

This module defines exception classes for handling the error conditions
that can occur while talking to a platform instance, persisting job state,
and running item migrations.
"""


class ItemBridgeError(Exception):
    """Base exception for all Item Bridge errors."""

    pass


class APIError(ItemBridgeError):
    """Base class for API-related errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response: dict | None = None,
        error_code: str | None = None,
        error_detail: str | None = None,
    ):
        """Initialize API error.

        Args:
            message: Error message
            status_code: HTTP status code
            response: API response body
            error_code: Platform error code (the ``error`` key of the body)
            error_detail: Platform error detail (the ``error_detail`` key of the body)
        """
        self.message = message
        self.status_code = status_code
        self.response = response
        self.error_code = error_code
        self.error_detail = error_detail
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format error message with status code and error code."""
        msg = self.message
        if self.status_code:
            msg = f"[{self.status_code}] {msg}"
        if self.error_code:
            msg = f"{msg} ({self.error_code})"
        if self.error_detail:
            msg = f"{msg}: {self.error_detail}"
        return msg


class AuthenticationError(APIError):
    """Raised when authentication fails (401 Unauthorized)."""

    pass


class AuthorizationError(APIError):
    """Raised when authorization fails (403 Forbidden)."""

    pass


class NotFoundError(APIError):
    """Raised when a resource is not found (404 Not Found)."""

    pass


class ConflictError(APIError):
    """Raised when a resource conflict occurs (409 Conflict).

    The platform answers with 409 when an item with the same external id
    already exists in the app.
    """

    pass


class RateLimitError(APIError):
    """Raised when API rate limit is exceeded (429 or 420)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response: dict | None = None,
        error_code: str | None = None,
        error_detail: str | None = None,
        retry_after: int | None = None,
    ):
        """Initialize rate limit error.

        Args:
            message: Error message
            status_code: HTTP status code
            response: API response body
            error_code: Platform error code
            error_detail: Platform error detail
            retry_after: Seconds to wait before retrying (from Retry-After header)
        """
        super().__init__(message, status_code, response, error_code, error_detail)
        self.retry_after = retry_after


class ServerError(APIError):
    """Raised when server returns 5xx error."""

    pass


class FieldNotFoundError(APIError):
    """Raised when a write references a field that no longer exists on the app.

    This signals a stale schema: cached field metadata must be dropped and
    the write retried against the refreshed schema.

    Attributes:
        batch_offset: Index (within the submitted list) of the batch that failed
        partial_result: Result accumulated before the failure was detected
        pending: Write requests that still have to be submitted
    """

    batch_offset: int | None = None
    partial_result: object | None = None
    pending: list | None = None

    @classmethod
    def from_api_error(cls, error: APIError) -> "FieldNotFoundError":
        """Re-wrap an API error that carries the field-not-found signature."""
        return cls(
            error.message,
            status_code=error.status_code,
            response=error.response,
            error_code=error.error_code,
            error_detail=error.error_detail,
        )


class NetworkError(ItemBridgeError):
    """Raised when network-related errors occur (timeouts, connection failures)."""

    pass


class ValidationError(ItemBridgeError):
    """Raised when data validation fails."""

    pass


class StateError(ItemBridgeError):
    """Raised when job state persistence fails."""

    pass


class StateCorruptionError(StateError):
    """Raised when a job file and its backup are both unreadable."""

    pass


class ConfigurationError(ItemBridgeError):
    """Raised when configuration is invalid or missing."""

    pass


class MigrationError(ItemBridgeError):
    """Raised when migration operations fail."""

    pass


class JobLifecycleError(MigrationError):
    """Raised when a job control operation is not valid for the job's status."""

    pass


class MappingValidationError(MigrationError):
    """Raised when a field mapping cannot be resolved or fails its smoke test."""

    pass


class PrefetchError(MigrationError):
    """Raised when the duplicate-detection cache cannot be built.

    Attributes:
        remediation: Operator-facing hint describing how to recover
    """

    def __init__(self, message: str, remediation: str = ""):
        """Initialize prefetch error.

        Args:
            message: Error message
            remediation: Actionable remediation text
        """
        self.remediation = remediation
        super().__init__(f"{message}. {remediation}" if remediation else message)


class PrefetchTimeoutError(PrefetchError):
    """Raised when building the cache exceeds its overall time budget."""

    pass


class PrefetchStalledError(PrefetchError):
    """Raised when the target stream stops delivering pages during a cache build."""

    pass
