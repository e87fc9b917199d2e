"""Tests for advisory rate limiting."""

import json
from unittest.mock import MagicMock

from starlette.requests import Request as StarletteRequest

from dataset_gate.core.rate_limiting import _client_address, rate_limit_exceeded_handler


def _request(headers: dict[str, str] | None = None, client=("10.0.0.9", 4321)):
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/api/v1/downloads/redeem",
        "headers": [
            (k.lower().encode("latin-1"), v.encode("latin-1"))
            for k, v in (headers or {}).items()
        ],
        "client": client,
    }
    return StarletteRequest(scope)


class TestClientAddress:
    """Rate limit key selection."""

    def test_prefers_edge_header(self):
        """x-nf-client-connection-ip wins over every other source."""
        request = _request(
            {
                "x-nf-client-connection-ip": "203.0.113.7",
                "x-forwarded-for": "198.51.100.1, 10.0.0.1",
                "client-ip": "192.0.2.5",
            }
        )
        assert _client_address(request) == "203.0.113.7"

    def test_uses_first_forwarded_hop(self):
        """Only the first X-Forwarded-For hop is used."""
        request = _request({"x-forwarded-for": "198.51.100.1, 10.0.0.1"})
        assert _client_address(request) == "198.51.100.1"

    def test_falls_back_to_client_ip_header(self):
        """client-ip is used when no forwarding headers exist."""
        request = _request({"client-ip": "192.0.2.5"})
        assert _client_address(request) == "192.0.2.5"

    def test_falls_back_to_socket_peer(self):
        """Without headers the socket peer is the key."""
        assert _client_address(_request()) == "10.0.0.9"


class TestRateLimitExceededHandler:
    """Rate limit exceeded response format."""

    def test_returns_429_with_envelope(self):
        """Rate limit response uses the standard error envelope."""
        exc = MagicMock()
        exc.detail = "20 per 1 minute"

        response = rate_limit_exceeded_handler(_request(), exc)

        assert response.status_code == 429
        body = json.loads(response.body)
        assert body["error"]["code"] == "RATE_LIMITED"

    def test_retry_after_falls_back_to_60(self):
        """Unparseable detail falls back to a 60 second hint."""
        exc = MagicMock()
        exc.detail = "per minute"

        response = rate_limit_exceeded_handler(_request(), exc)

        assert response.headers["retry-after"] == "60"
