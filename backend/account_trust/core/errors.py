"""Error taxonomy and API error classes.

Two layers:

- ``ErrorKind`` is the business-outcome taxonomy carried inside typed
  service results. Services never raise for an expected outcome.
- ``APIError`` subclasses are raised only at the HTTP boundary, where a
  failed result is converted with ``api_error_for()`` and rendered with the
  standard error envelope.

WHY TWO LAYERS:
- Service callers (orchestration, scripts, tests) branch on a closed enum
  instead of catching exception types
- No stack trace can reach an end user for an expected outcome
- HTTP status codes stay a presentation concern
"""

from enum import StrEnum


class ErrorKind(StrEnum):
    """Named failure kinds returned by account trust operations.

    Only ``TRANSIENT`` is retry-eligible. Every other kind is terminal for
    the attempt that produced it.
    """

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    IDENTITY_GONE = "identity_gone"
    CONFLICT = "conflict"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"


class APIError(Exception):
    """Base class for API errors.

    Attributes:
        code: Machine-readable error code (e.g., "NOT_FOUND").
        message: Human-readable error message.
        status_code: HTTP status code to return.
        details: Optional list of additional error details.
        headers: Optional extra response headers (e.g., Retry-After).
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: list[dict] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        self.headers = headers
        super().__init__(message)


class ValidationError(APIError):
    """Field validation failed (400)."""

    def __init__(
        self,
        message: str,
        details: list[dict] | None = None,
    ) -> None:
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=400,
            details=details,
        )


class UnauthorizedError(APIError):
    """Authentication required (401)."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(
            code="UNAUTHORIZED",
            message=message,
            status_code=401,
        )


class ForbiddenError(APIError):
    """Authenticated, but not allowed to perform the action (403)."""

    def __init__(self, message: str = "Access denied") -> None:
        super().__init__(
            code="FORBIDDEN",
            message=message,
            status_code=403,
        )


class NotFoundError(APIError):
    """Resource not found (404).

    Also used when the resource exists but belongs to another user.
    Revealing "exists but not yours" leaks information.
    """

    def __init__(self, message: str = "Not found") -> None:
        super().__init__(
            code="NOT_FOUND",
            message=message,
            status_code=404,
        )


class ExpiredError(APIError):
    """Single-use link expired or its identity no longer exists (410)."""

    def __init__(self, message: str) -> None:
        super().__init__(
            code="GONE",
            message=message,
            status_code=410,
        )


class ConflictError(APIError):
    """Target state changed between issue and consume (409)."""

    def __init__(self, message: str, code: str = "CONFLICT") -> None:
        super().__init__(
            code=code,
            message=message,
            status_code=409,
        )


class RateLimitedError(APIError):
    """Too many attempts for this scope (429).

    Args:
        message: User-facing message.
        retry_after: Seconds until the window frees capacity.
    """

    def __init__(self, message: str, retry_after: int | None = None) -> None:
        super().__init__(
            code="RATE_LIMITED",
            message=message,
            status_code=429,
            headers={"Retry-After": str(max(retry_after or 60, 1))},
        )


class ServiceUnavailableError(APIError):
    """Backing store unreachable (503). The only retry-eligible error."""

    def __init__(
        self, message: str = "Service temporarily unavailable. Please try again."
    ) -> None:
        super().__init__(
            code="SERVICE_UNAVAILABLE",
            message=message,
            status_code=503,
        )


def api_error_for(
    kind: ErrorKind, message: str, *, retry_after: int | None = None
) -> APIError:
    """Map a business error kind to the API error raised at the boundary.

    Args:
        kind: Failure kind from a service result.
        message: User-safe message carried by the result.
        retry_after: Seconds until retry is useful (rate limits only).

    Returns:
        APIError instance ready to raise.
    """
    if kind is ErrorKind.VALIDATION:
        return ValidationError(message)
    if kind is ErrorKind.NOT_FOUND:
        return NotFoundError(message)
    if kind in (ErrorKind.EXPIRED, ErrorKind.IDENTITY_GONE):
        return ExpiredError(message)
    if kind is ErrorKind.CONFLICT:
        return ConflictError(message)
    if kind is ErrorKind.FORBIDDEN:
        return ForbiddenError(message)
    if kind is ErrorKind.RATE_LIMITED:
        return RateLimitedError(message, retry_after=retry_after)
    return ServiceUnavailableError(message)
