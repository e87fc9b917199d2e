"""Download token records, usage state, and redemption result schemas.

Stored shapes:
- Token record: JSON at tokens/<token_id>.json, camelCase keys,
  timestamps as epoch milliseconds. Immutable after issuance.
- Usage state: object at tokens-state/<token_id> whose user metadata
  carries uses/max/exp as strings. Created with an empty body; each
  conditional replace rewrites the body too, so its version tag moves.
"""

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from dataset_gate.providers.storage.base import ObjectHead

# User metadata keys on the usage-state object (S3 lowercases them anyway)
USES_FIELD = "uses"
MAX_FIELD = "max"
EXP_FIELD = "exp"


def to_epoch_ms(value: datetime) -> int:
    """Convert an aware datetime to integer epoch milliseconds."""
    return int(value.timestamp() * 1000)


def from_epoch_ms(value: int | float) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return datetime.fromtimestamp(value / 1000, tz=UTC)


def format_iso(value: datetime) -> str:
    """Render an ISO-8601 UTC timestamp with millisecond precision and 'Z'."""
    return (
        value.astimezone(UTC)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


# =============================================================================
# Token record
# =============================================================================


class TokenRecord(BaseModel):
    """Immutable token record.

    Attributes:
        token_id: Canonical UUID-v4 string (stored as "token").
        resource_key: Object key of the artifact (stored as "key"). May be
            empty for legacy records; resolution then falls back to config.
        purchase_ref: Originating order id (stored as "orderID").
        created_at: Issuance time (stored as epoch ms "createdAt").
        expires_at: Absolute expiry (stored as epoch ms "expiresAt").
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    token_id: str = Field(alias="token")
    resource_key: str = Field(default="", alias="key")
    purchase_ref: str = Field(default="", alias="orderID")
    created_at: datetime = Field(alias="createdAt")
    expires_at: datetime = Field(alias="expiresAt")

    @field_validator("created_at", "expires_at", mode="before")
    @classmethod
    def parse_epoch_ms(cls, value: object) -> object:
        """Accept epoch milliseconds as stored; pass datetimes through."""
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return from_epoch_ms(value)
        return value

    @field_serializer("created_at", "expires_at")
    def serialize_epoch_ms(self, value: datetime) -> int:
        return to_epoch_ms(value)

    def to_json_bytes(self) -> bytes:
        """Serialize to the stored JSON document."""
        return self.model_dump_json(by_alias=True).encode("utf-8")


# =============================================================================
# Usage state
# =============================================================================


@dataclass(frozen=True)
class UsageState:
    """Mutable usage counter as read from (or about to be written to) the store.

    Attributes:
        uses: Successful redemptions so far.
        max_uses: Cap fixed at creation (lowered only by revocation).
        expires_at: Expiry from the state's "exp" metadata, or None when the
            state does not carry one (the token record's expiry then applies).
        version_tag: Version tag the state was read at ("" before first write).
    """

    uses: int
    max_uses: int
    expires_at: datetime | None
    version_tag: str = ""

    @classmethod
    def from_head(cls, head: ObjectHead) -> "UsageState | None":
        """Parse usage metadata.

        Returns None for anything that does not parse cleanly (non-integer
        counts, negative uses, max below 1, malformed exp). Callers treat
        None like a missing state: the token is denied.
        """
        meta = {k.lower(): v for k, v in head.metadata.items()}
        try:
            uses = int(meta[USES_FIELD])
            max_uses = int(meta[MAX_FIELD])
        except (KeyError, TypeError, ValueError):
            return None
        if uses < 0 or max_uses < 1:
            return None

        expires_at: datetime | None = None
        raw_exp = (meta.get(EXP_FIELD) or "").strip()
        if raw_exp:
            try:
                expires_at = datetime.fromisoformat(raw_exp)
            except ValueError:
                return None
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=UTC)

        return cls(
            uses=uses,
            max_uses=max_uses,
            expires_at=expires_at,
            version_tag=head.version_tag,
        )

    def to_metadata(self) -> dict[str, str]:
        """Render as string-valued object metadata."""
        return {
            USES_FIELD: str(self.uses),
            MAX_FIELD: str(self.max_uses),
            EXP_FIELD: format_iso(self.expires_at) if self.expires_at else "",
        }

    def incremented(self) -> "UsageState":
        """Return a copy with one more use."""
        return replace(self, uses=self.uses + 1)


# =============================================================================
# Service results
# =============================================================================


class TokenStatus(str, Enum):
    """Classification of a known token at a given instant."""

    ACTIVE = "active"
    EXHAUSTED = "exhausted"
    EXPIRED = "expired"


class UsageSnapshot(BaseModel):
    """Non-mutating view of a token's usage (peek)."""

    model_config = ConfigDict(extra="forbid")

    status: TokenStatus
    uses: int
    max_uses: int
    remaining: int
    expires_at: datetime | None
    last: bool


class RedemptionResult(BaseModel):
    """Outcome of a successful redemption.

    Attributes:
        url: Short-lived signed download URL.
        uses: Use count after this redemption.
        max_uses: Cap in effect.
        remaining: Uses left after this redemption.
        expires_at: Token expiry.
        last: True when this redemption consumed the final use.
    """

    model_config = ConfigDict(extra="forbid")

    url: str
    uses: int
    max_uses: int
    remaining: int
    expires_at: datetime | None
    last: bool


class IssuedToken(BaseModel):
    """A freshly minted token."""

    model_config = ConfigDict(extra="forbid")

    token_id: str
    resource_key: str
    purchase_ref: str
    max_uses: int
    created_at: datetime
    expires_at: datetime


class ReissueResult(BaseModel):
    """Outcome of an admin re-issuance.

    Attributes:
        order_id: Order the token belongs to.
        token: The replacement token.
        previous_token_id: Token that was current before re-issuance, if any.
        revoked: Whether the previous token was successfully revoked.
    """

    model_config = ConfigDict(extra="forbid")

    order_id: str
    token: IssuedToken
    previous_token_id: str | None
    revoked: bool
