"""Purchase record schema.

Stored as JSON at orders/<order_id>.json with camelCase keys and epoch
millisecond timestamps. Fields written by older deployments (or by hand
during support) are preserved on rewrite.
"""

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# Gateway order ids: 6-64 chars, alnum plus dash/underscore
ORDER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{6,64}$")

STATUS_COMPLETED = "COMPLETED"
STATUS_ERROR = "ERROR"
STATUS_AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
STATUS_CONFIG_ERROR = "CONFIG_ERROR"


def is_valid_order_id(value: str | None) -> bool:
    """Check an order id against the accepted format."""
    return bool(value) and ORDER_ID_PATTERN.match(value) is not None


class PurchaseRecord(BaseModel):
    """Minimal purchase record (no full payer profile, trimmed gateway payload).

    Attributes:
        order_id: Gateway order id.
        status: COMPLETED, a gateway status, or a diagnostic status.
        stage: Diagnostic stage name for failed captures.
        token: Current download token id.
        previous_tokens: Token ids replaced by admin re-issuance, oldest first.
        gateway_status: Last status reported by a webhook.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    order_id: str = Field(alias="orderID")
    status: str | None = None
    stage: str | None = None
    note: str | None = None
    token: str | None = None
    previous_tokens: list[str] = Field(default_factory=list, alias="previousTokens")
    amount: str | None = None
    currency: str | None = None
    payer: dict[str, Any] | None = None
    capture_id: str | None = Field(default=None, alias="captureId")
    csv_key: str | None = Field(default=None, alias="csvKey")
    last_event: str | None = Field(default=None, alias="lastEvent")
    gateway_status: str | None = Field(default=None, alias="gatewayStatus")
    webhook_seen: int | None = Field(default=None, alias="webhookSeen")
    reissued_at: int | None = Field(default=None, alias="reissuedAt")
    created_at: int | None = Field(default=None, alias="createdAt")
    updated_at: int | None = Field(default=None, alias="updatedAt")
    raw: Any = None

    @property
    def is_completed(self) -> bool:
        return self.status == STATUS_COMPLETED

    def to_json_bytes(self) -> bytes:
        """Serialize to the stored JSON document (None fields omitted)."""
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")
