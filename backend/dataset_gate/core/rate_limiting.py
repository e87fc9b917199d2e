"""Rate limiting configuration using slowapi.

Security: Blunts casual abuse of the download and checkout endpoints.

This limiter is advisory. With the default "memory://" storage its counters
live in one process and reset on every fresh instance; point
RATE_LIMIT_STORAGE_URI at a shared backend (e.g. "redis://host:6379") to
share counters across instances without touching call sites. It is never
the mechanism that prevents a token from being used more than its cap.

Usage in routers:
    from dataset_gate.core.rate_limiting import limiter

    @router.post("/redeem")
    @limiter.limit(settings.rate_limit_downloads)
    async def redeem_token(request: Request, ...):
        ...
"""

from fastapi import Request, Response
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.responses import JSONResponse

from dataset_gate.core.config import settings


def _client_address(request: Request) -> str:
    """Get rate limit key from request.

    Prefers the edge-provided client address headers, then the first hop of
    X-Forwarded-For, then the socket peer.

    Args:
        request: The incoming request.

    Returns:
        Rate limit key string.
    """
    headers = request.headers
    edge_ip = headers.get("x-nf-client-connection-ip")
    if edge_ip:
        return edge_ip.strip()

    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop

    client_ip = headers.get("client-ip")
    if client_ip:
        return client_ip.strip()

    return get_remote_address(request) or "unknown"


# Global limiter instance
limiter = Limiter(
    key_func=_client_address,
    enabled=settings.rate_limit_enabled,
    storage_uri=settings.rate_limit_storage_uri,
)


def rate_limit_exceeded_handler(
    _request: Request,
    exc: RateLimitExceeded,
) -> Response:
    """Handle rate limit exceeded errors.

    Returns 429 Too Many Requests with the standard error envelope.

    Args:
        request: The incoming request.
        exc: The rate limit exception.

    Returns:
        JSONResponse with 429 status and retry-after header.
    """
    # Parse retry-after from exception detail (e.g., "20 per 1 minute")
    # Fallback to 60 seconds if parsing fails
    try:
        retry_after = str(exc.detail.split()[-1])
        int(retry_after.rstrip("s"))
    except (ValueError, AttributeError, IndexError):
        retry_after = "60"

    return JSONResponse(
        status_code=429,
        content={
            "error": {
                "code": "RATE_LIMITED",
                "message": "Too many requests. Please wait a minute and try again.",
            }
        },
        headers={"Retry-After": retry_after},
    )
