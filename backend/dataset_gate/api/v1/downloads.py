"""Download token endpoints.

Endpoints:
- POST /downloads/redeem: consume one use, return the signed URL as JSON
- GET /downloads/{token}: consume one use, 302 to the signed URL
- GET /downloads?token=...: same, token in the query string
- GET /downloads/{token}?peek=1: usage snapshot, consumes nothing

The signed URL is a credential in its own right; it is returned to the
caller and never logged.
"""

from typing import Annotated

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict
from starlette.responses import Response

from dataset_gate.api.deps import Redemption
from dataset_gate.core.config import settings
from dataset_gate.core.rate_limiting import limiter
from dataset_gate.core.responses import DataResponse
from dataset_gate.schemas.tokens import RedemptionResult

router = APIRouter()

_PEEK_VALUES = frozenset({"1", "true"})

PeekParam = Annotated[
    str | None,
    Query(max_length=8, description="'1' or 'true' to inspect without consuming"),
]


class RedeemRequest(BaseModel):
    """Request body for POST /downloads/redeem."""

    model_config = ConfigDict(extra="ignore")

    token: str = ""


async def _redeem_or_peek(service: Redemption, token: str, peek: str | None) -> Response:
    if peek is not None and peek.lower() in _PEEK_VALUES:
        snapshot = await service.peek(token)
        return JSONResponse(content=DataResponse(data=snapshot).model_dump(mode="json"))

    result = await service.redeem(token)
    return RedirectResponse(url=result.url, status_code=302)


# ===================================================================
# POST /downloads/redeem
# ===================================================================


@router.post("/redeem")
@limiter.limit(settings.rate_limit_downloads)
async def redeem_token(
    request: Request,  # noqa: ARG001 - required by @limiter.limit()
    body: RedeemRequest,
    service: Redemption,
) -> DataResponse[RedemptionResult]:
    """Consume one use of a token and return a signed download URL.

    Denials: 400 malformed, 404 unknown, 410 expired, 429 limit reached
    (with Retry-After), 409 contention (retry).
    """
    result = await service.redeem(body.token)
    return DataResponse(data=result)


# ===================================================================
# GET /downloads, GET /downloads/{token}
# ===================================================================


@router.get("")
@limiter.limit(settings.rate_limit_downloads)
async def download_by_query(
    request: Request,  # noqa: ARG001 - required by @limiter.limit()
    service: Redemption,
    token: Annotated[str, Query(max_length=64)] = "",
    peek: PeekParam = None,
) -> Response:
    """Redirect to the signed URL, or peek with ?peek=1."""
    return await _redeem_or_peek(service, token, peek)


@router.get("/{token}")
@limiter.limit(settings.rate_limit_downloads)
async def download_by_path(
    request: Request,  # noqa: ARG001 - required by @limiter.limit()
    token: str,
    service: Redemption,
    peek: PeekParam = None,
) -> Response:
    """Redirect to the signed URL, or peek with ?peek=1."""
    return await _redeem_or_peek(service, token, peek)
