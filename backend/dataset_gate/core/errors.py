"""API error classes.

HTTP status codes and error codes for every failure the service reports,
including the download-token denial taxonomy (not found, expired, limit
reached, conflict) and upstream failures.

WHY CUSTOM ERROR CLASSES:
- Consistent error response format across all endpoints
- Easy to map to HTTP status codes in exception handlers
- Type-safe error handling in services
"""

from datetime import datetime


class APIError(Exception):
    """Base class for API errors.

    All API errors have a code, message, and HTTP status.
    Subclasses set default status_code.

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
    """Field validation failed (400).

    Use for malformed token ids, order ids, and request bodies.
    """

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


class ForbiddenError(APIError):
    """Not allowed to perform the operation (403)."""

    def __init__(self, message: str = "Access denied") -> None:
        super().__init__(
            code="FORBIDDEN",
            message=message,
            status_code=403,
        )


class NotFoundError(APIError):
    """Resource not found (404)."""

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        if resource_id:
            message = f"{resource} with id '{resource_id}' not found"
        else:
            message = f"{resource} not found"
        super().__init__(
            code="NOT_FOUND",
            message=message,
            status_code=404,
        )


class InvalidStateError(APIError):
    """Business rule violation (422).

    E.g., re-issuing a token for an order that never completed.
    """

    def __init__(self, message: str) -> None:
        super().__init__(
            code="INVALID_STATE_TRANSITION",
            message=message,
            status_code=422,
        )


# =============================================================================
# Download token denials
# =============================================================================


class TokenNotFoundError(APIError):
    """Token unknown, or its usage state is missing (404).

    A token record without usage state (partial issue) is reported exactly
    like an unknown token. Non-retryable: the link is invalid.
    """

    def __init__(self) -> None:
        super().__init__(
            code="TOKEN_NOT_FOUND",
            message="Token not found or invalid",
            status_code=404,
        )


class TokenExpiredError(APIError):
    """Token is past its absolute expiry plus grace (410). Non-retryable."""

    def __init__(
        self,
        *,
        uses: int,
        max_uses: int,
        expires_at: datetime | None,
    ) -> None:
        super().__init__(
            code="TOKEN_EXPIRED",
            message=(
                "This download link has expired. "
                "Please contact support if you need assistance."
            ),
            status_code=410,
            details=[
                {
                    "uses": uses,
                    "max_uses": max_uses,
                    "remaining": 0,
                    "expires_at": expires_at.isoformat() if expires_at else None,
                }
            ],
        )


class DownloadLimitReachedError(APIError):
    """Usage cap reached (429).

    Non-retryable by the client; caps are reset by support on a human
    timescale, hence the long Retry-After hint.
    """

    def __init__(
        self,
        *,
        uses: int,
        max_uses: int,
        expires_at: datetime | None,
        retry_after_seconds: int,
    ) -> None:
        super().__init__(
            code="DOWNLOAD_LIMIT_REACHED",
            message=(
                f"You've reached the maximum number of downloads ({max_uses}) "
                "for this purchase. Please contact support if you need assistance."
            ),
            status_code=429,
            details=[
                {
                    "uses": uses,
                    "max_uses": max_uses,
                    "remaining": 0,
                    "expires_at": expires_at.isoformat() if expires_at else None,
                }
            ],
            headers={"Retry-After": str(retry_after_seconds)},
        )


class RedemptionConflictError(APIError):
    """Optimistic-update retry budget exhausted under contention (409).

    Transient: the client should simply try again.
    """

    def __init__(self) -> None:
        super().__init__(
            code="REDEMPTION_CONFLICT",
            message="Please try the download again.",
            status_code=409,
        )


# =============================================================================
# Upstream / configuration failures
# =============================================================================


class UpstreamFailureError(APIError):
    """Object store or payment gateway failure (502).

    The message is always generic; details are logged server-side only.
    """

    def __init__(self, message: str = "Upstream service failure") -> None:
        super().__init__(
            code="UPSTREAM_FAILURE",
            message=message,
            status_code=502,
        )


class IssueIncompleteError(APIError):
    """Token record written but its usage state was not (502).

    The orphaned token is denied on redemption, so this fails closed.
    """

    def __init__(self) -> None:
        super().__init__(
            code="ISSUE_INCOMPLETE",
            message="Download link could not be created. Please try again.",
            status_code=502,
        )


class PaymentRejectedError(APIError):
    """Captured payment did not pass server-side verification (400).

    Args:
        code: PAYMENT_NOT_COMPLETED or AMOUNT_MISMATCH.
        message: Human-readable reason.
    """

    def __init__(self, code: str, message: str) -> None:
        super().__init__(
            code=code,
            message=message,
            status_code=400,
        )


class ServiceNotConfiguredError(APIError):
    """Required server configuration is missing (500)."""

    def __init__(self, message: str = "Server not configured.") -> None:
        super().__init__(
            code="NOT_CONFIGURED",
            message=message,
            status_code=500,
        )


class InternalError(APIError):
    """Unexpected server error (500).

    Use for unhandled exceptions. Never expose stack traces to clients.
    """

    def __init__(self, message: str = "An unexpected error occurred") -> None:
        super().__init__(
            code="INTERNAL_ERROR",
            message=message,
            status_code=500,
        )
