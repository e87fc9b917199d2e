"""Checkout endpoints.

Endpoints:
- POST /orders: create a gateway order at the configured price
- POST /orders/{order_id}/capture: capture and mint a download token
"""

from fastapi import APIRouter, Request

from dataset_gate.api.deps import Checkout
from dataset_gate.core.config import settings
from dataset_gate.core.rate_limiting import limiter
from dataset_gate.core.responses import DataResponse

router = APIRouter()


@router.post("")
@limiter.limit(settings.rate_limit_checkout)
async def create_order(
    request: Request,  # noqa: ARG001 - required by @limiter.limit()
    service: Checkout,
) -> DataResponse[dict]:
    """Create an order. Price and currency come from server configuration only."""
    order_id = await service.create_order()
    return DataResponse(data={"id": order_id})


@router.post("/{order_id}/capture")
@limiter.limit(settings.rate_limit_checkout)
async def capture_order(
    request: Request,  # noqa: ARG001 - required by @limiter.limit()
    order_id: str,
    service: Checkout,
) -> DataResponse[dict]:
    """Capture an approved order and return its download token.

    Idempotent: capturing a completed order again returns the same token
    with already_processed=true.
    """
    outcome = await service.capture_order(order_id)
    return DataResponse(
        data={
            "token": outcome.token_id,
            "already_processed": outcome.already_processed,
        }
    )
