"""Pydantic schemas for stored records and service results."""

from dataset_gate.schemas.orders import PurchaseRecord, is_valid_order_id
from dataset_gate.schemas.tokens import (
    IssuedToken,
    RedemptionResult,
    ReissueResult,
    TokenRecord,
    TokenStatus,
    UsageSnapshot,
    UsageState,
)

__all__ = [
    # Orders
    "PurchaseRecord",
    "is_valid_order_id",
    # Tokens
    "IssuedToken",
    "RedemptionResult",
    "ReissueResult",
    "TokenRecord",
    "TokenStatus",
    "UsageSnapshot",
    "UsageState",
]
