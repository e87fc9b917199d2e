"""Tests for API error classes and the error envelope handlers."""

import json
from datetime import UTC, datetime

from fastapi.exceptions import RequestValidationError
from starlette.requests import Request as StarletteRequest

from dataset_gate.core.errors import (
    APIError,
    DownloadLimitReachedError,
    ForbiddenError,
    IssueIncompleteError,
    NotFoundError,
    PaymentRejectedError,
    RedemptionConflictError,
    ServiceNotConfiguredError,
    TokenExpiredError,
    TokenNotFoundError,
    UpstreamFailureError,
    ValidationError,
)
from dataset_gate.main import api_error_handler, validation_error_handler

_EXPIRES = datetime(2026, 1, 16, 12, 0, tzinfo=UTC)


def _request() -> StarletteRequest:
    return StarletteRequest({"type": "http", "method": "GET", "path": "/test"})


class TestErrorStatusCodes:
    """Each error maps to its HTTP status and code."""

    def test_status_and_codes(self):
        """Status codes and machine-readable codes are stable."""
        cases = [
            (ValidationError("bad"), 400, "VALIDATION_ERROR"),
            (ForbiddenError(), 403, "FORBIDDEN"),
            (NotFoundError("Order", "ORDER123"), 404, "NOT_FOUND"),
            (TokenNotFoundError(), 404, "TOKEN_NOT_FOUND"),
            (
                TokenExpiredError(uses=1, max_uses=3, expires_at=_EXPIRES),
                410,
                "TOKEN_EXPIRED",
            ),
            (
                DownloadLimitReachedError(
                    uses=3, max_uses=3, expires_at=_EXPIRES, retry_after_seconds=86_400
                ),
                429,
                "DOWNLOAD_LIMIT_REACHED",
            ),
            (RedemptionConflictError(), 409, "REDEMPTION_CONFLICT"),
            (UpstreamFailureError(), 502, "UPSTREAM_FAILURE"),
            (IssueIncompleteError(), 502, "ISSUE_INCOMPLETE"),
            (PaymentRejectedError("AMOUNT_MISMATCH", "Amount mismatch"), 400, "AMOUNT_MISMATCH"),
            (ServiceNotConfiguredError(), 500, "NOT_CONFIGURED"),
        ]
        for error, status, code in cases:
            assert isinstance(error, APIError)
            assert error.status_code == status, code
            assert error.code == code

    def test_not_found_message_includes_id(self):
        """NotFoundError names the resource and id."""
        assert NotFoundError("Order", "ORDER123").message == (
            "Order with id 'ORDER123' not found"
        )


class TestDenialDetails:
    """Denials report usage with remaining pinned to zero."""

    def test_expired_details(self):
        """Expired tokens report uses, cap, zero remaining and expiry."""
        error = TokenExpiredError(uses=1, max_uses=3, expires_at=_EXPIRES)
        assert error.details == [
            {
                "uses": 1,
                "max_uses": 3,
                "remaining": 0,
                "expires_at": _EXPIRES.isoformat(),
            }
        ]
        assert error.headers is None

    def test_limit_reached_sets_retry_after(self):
        """Limit denials carry a Retry-After header and mention the cap."""
        error = DownloadLimitReachedError(
            uses=3, max_uses=3, expires_at=_EXPIRES, retry_after_seconds=86_400
        )
        assert error.headers == {"Retry-After": "86400"}
        assert "(3)" in error.message
        assert error.details[0]["remaining"] == 0


class TestErrorHandlers:
    """Handlers render the standard error envelope."""

    def test_api_error_envelope(self):
        """APIError renders {"error": {code, message, details}}."""
        response = api_error_handler(_request(), TokenNotFoundError())

        assert response.status_code == 404
        body = json.loads(response.body)
        assert body == {
            "error": {
                "code": "TOKEN_NOT_FOUND",
                "message": "Token not found or invalid",
                "details": None,
            }
        }

    def test_api_error_headers_are_forwarded(self):
        """Headers carried by the error reach the response."""
        error = DownloadLimitReachedError(
            uses=3, max_uses=3, expires_at=_EXPIRES, retry_after_seconds=86_400
        )
        response = api_error_handler(_request(), error)

        assert response.status_code == 429
        assert response.headers["retry-after"] == "86400"

    def test_request_validation_is_normalized(self):
        """FastAPI validation errors become 400 VALIDATION_ERROR."""
        exc = RequestValidationError(
            [{"loc": ("body", "token"), "msg": "Field required", "type": "missing"}]
        )
        response = validation_error_handler(_request(), exc)

        assert response.status_code == 400
        body = json.loads(response.body)
        assert body["error"]["code"] == "VALIDATION_ERROR"
        assert body["error"]["details"][0]["loc"] == ["body", "token"]
