"""Admin API router.

Endpoints:
- POST /admin/reissue: revoke an order's current token and mint a new one

All endpoints require the X-Admin-Secret header (AdminAuthorized).
"""

from fastapi import APIRouter
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from dataset_gate.api.deps import AdminAuthorized, Reissue
from dataset_gate.core.responses import DataResponse
from dataset_gate.schemas.tokens import ReissueResult

router = APIRouter()


class ReissueRequest(BaseModel):
    """Request body for POST /admin/reissue.

    Accepts "order_id" or the legacy "orderID" key.
    """

    model_config = ConfigDict(extra="ignore")

    order_id: str = Field(
        default="",
        max_length=64,
        validation_alias=AliasChoices("order_id", "orderID"),
    )


@router.post("/reissue")
async def reissue_token(
    _admin: AdminAuthorized,
    body: ReissueRequest,
    service: Reissue,
) -> DataResponse[ReissueResult]:
    """Revoke the order's current token (best effort) and mint a replacement."""
    result = await service.reissue(body.order_id)
    return DataResponse(data=result)
