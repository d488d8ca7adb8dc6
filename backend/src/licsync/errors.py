"""Error taxonomy for the reconciliation engine.

Every error raised by the engine derives from ``SyncError`` and carries
two attributes the reliability layer and the coordinator rely on:

- ``retryable``: whether the retry policy may try the call again
- ``severity``: low / medium / high, reported in sync results

Record-level errors (``ValidationError``) are accumulated per record;
fatal errors (``AuthError``, ``StorageError``) abort the whole sync.
"""

from enum import Enum

import httpx


class ErrorSeverity(str, Enum):
    """How badly an error affects a sync run."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SyncError(Exception):
    """Base class for reconciliation engine errors."""

    retryable: bool = False
    fatal: bool = False
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    # Upper bound on retries for this error class (None = policy default)
    max_retries: int | None = None

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    @property
    def error_type(self) -> str:
        return type(self).__name__


class NetworkError(SyncError):
    """Connection failures and 5xx responses from the external API."""

    retryable = True


class ApiTimeoutError(SyncError):
    """The external API did not answer in time."""

    retryable = True


class AuthError(SyncError):
    """The external API rejected our credentials (401/403)."""

    fatal = True
    severity = ErrorSeverity.HIGH


class RateLimitError(SyncError):
    """The external API asked us to slow down (429)."""

    retryable = True

    def __init__(
        self,
        message: str,
        *,
        retry_after: float | None = None,
        status_code: int | None = 429,
    ):
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class ValidationError(SyncError):
    """Malformed payload; the affected record is skipped."""

    severity = ErrorSeverity.LOW

    def __init__(
        self,
        message: str,
        *,
        identifier: str | None = None,
        field_errors: dict[str, str] | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message, status_code=status_code)
        self.identifier = identifier
        self.field_errors = field_errors or {}


class UnknownError(SyncError):
    """Anything we could not classify. Retried once, then surfaced."""

    retryable = True
    max_retries = 1


class CircuitOpenError(SyncError):
    """Call rejected without reaching the network because the breaker is open."""

    severity = ErrorSeverity.HIGH

    def __init__(self, name: str, retry_in: float):
        super().__init__(
            f"{name} unavailable (circuit breaker open, retry in {retry_in:.0f}s)"
        )
        self.name = name
        self.retry_in = retry_in


class StorageError(SyncError):
    """A license store is unavailable. Aborts the sync."""

    fatal = True
    severity = ErrorSeverity.HIGH


class SyncInProgressError(SyncError):
    """A sync was requested while another one is in flight."""

    def __init__(self, operation_id: str | None = None):
        super().__init__("Sync already in progress")
        self.operation_id = operation_id


class LicenseNotFoundError(SyncError):
    """The external API does not know the requested license."""

    severity = ErrorSeverity.LOW


class ConsolidationError(SyncError):
    """A consolidation request references unknown or invalid records."""

    severity = ErrorSeverity.LOW


def classify_http_status(
    status_code: int,
    message: str,
    retry_after: float | None = None,
) -> SyncError:
    """Map an HTTP status code from the external API to the error taxonomy."""
    if status_code in (401, 403):
        return AuthError(message, status_code=status_code)
    if status_code == 429:
        return RateLimitError(message, retry_after=retry_after)
    if status_code == 408:
        return ApiTimeoutError(message, status_code=status_code)
    if status_code >= 500:
        return NetworkError(message, status_code=status_code)
    if status_code in (400, 422):
        return ValidationError(message, status_code=status_code)
    return UnknownError(message, status_code=status_code)


def classify_exception(exc: BaseException) -> SyncError:
    """Wrap an arbitrary exception into the error taxonomy.

    Already-classified errors are returned unchanged.
    """
    if isinstance(exc, SyncError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return ApiTimeoutError(f"Request timed out: {exc}")
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_http_status(exc.response.status_code, str(exc))
    if isinstance(exc, httpx.TransportError):
        return NetworkError(f"Network error: {exc}")
    if isinstance(exc, TimeoutError):
        return ApiTimeoutError(str(exc) or "Operation timed out")
    if isinstance(exc, ConnectionError):
        return NetworkError(str(exc))
    return UnknownError(f"{type(exc).__name__}: {exc}")
