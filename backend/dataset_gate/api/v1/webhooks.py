"""Payment gateway webhooks.

The body is only trusted after the gateway itself confirms the signature.
"""

import json

from fastapi import APIRouter, Request

from dataset_gate.api.deps import Checkout
from dataset_gate.core.errors import ValidationError
from dataset_gate.core.responses import DataResponse

router = APIRouter()


@router.post("/paypal")
async def paypal_webhook(request: Request, service: Checkout) -> DataResponse[dict]:
    """Verify a PayPal webhook and reconcile order breadcrumbs."""
    raw = await request.body()
    try:
        event = json.loads(raw) if raw else None
    except ValueError as e:
        raise ValidationError("Webhook body is not valid JSON") from e
    if not isinstance(event, dict):
        raise ValidationError("Empty webhook body")

    order_id = await service.handle_webhook(dict(request.headers), event)
    return DataResponse(data={"ok": True, "order_id": order_id})
