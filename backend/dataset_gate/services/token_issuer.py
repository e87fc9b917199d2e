"""Token issuance.

Creates the immutable token record, then the usage state with uses=0.

WHY TWO OBJECTS:
- The token record never changes, so it can be a plain JSON body
- The usage state is mutated by conditional metadata replaces, which need
  a small object whose ETag moves only when the counter moves

Ordering matters: the record is written first. If the state write then
fails, the token exists without state and redemption denies it, so a
partial issue never yields a usable token.
"""

import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog

from dataset_gate.core.errors import IssueIncompleteError, UpstreamFailureError
from dataset_gate.core.logging import token_tail
from dataset_gate.providers.errors import StoreError
from dataset_gate.providers.storage.base import BlobStore
from dataset_gate.repositories.token_repository import TokenRepository
from dataset_gate.schemas.tokens import IssuedToken, TokenRecord, UsageState

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TokenIssuer:
    """Mints download tokens for verified purchases.

    Not idempotent per purchase: every call mints a new token. Callers
    short-circuit through the purchase record.

    Args:
        store: Object store.
        clock: Returns the current aware UTC time (injectable for tests).
    """

    def __init__(
        self,
        store: BlobStore,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._clock = clock

    async def issue(
        self,
        purchase_ref: str,
        resource_key: str,
        *,
        ttl_seconds: int,
        max_uses: int,
    ) -> IssuedToken:
        """Mint a token bound to resource_key.

        Args:
            purchase_ref: Order id the token is minted for.
            resource_key: Object key the token grants access to.
            ttl_seconds: Lifetime from now.
            max_uses: Redemption cap.

        Returns:
            IssuedToken describing the new token.

        Raises:
            ValueError: Invalid ttl, max_uses or empty resource_key.
            UpstreamFailureError: The token record could not be written.
            IssueIncompleteError: The record was written but the usage
                state was not.
        """
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")
        if max_uses < 1:
            raise ValueError(f"max_uses must be at least 1, got {max_uses}")
        if not resource_key:
            raise ValueError("resource_key must not be empty")

        now = self._clock()
        # Millisecond precision, matching what the stored record can carry
        now = now.replace(microsecond=(now.microsecond // 1000) * 1000)
        expires_at = now + timedelta(seconds=ttl_seconds)
        token_id = str(uuid.uuid4())

        record = TokenRecord(
            token_id=token_id,
            resource_key=resource_key,
            purchase_ref=purchase_ref,
            created_at=now,
            expires_at=expires_at,
        )
        try:
            await TokenRepository.put_token(self._store, record)
        except StoreError as e:
            logger.error(
                "token_record_write_failed",
                order_id=purchase_ref,
                error=type(e).__name__,
            )
            raise UpstreamFailureError() from e

        state = UsageState(uses=0, max_uses=max_uses, expires_at=expires_at)
        try:
            await TokenRepository.put_state(self._store, token_id, state)
        except StoreError as e:
            logger.error(
                "token_state_write_failed",
                order_id=purchase_ref,
                token_tail=token_tail(token_id),
                error=type(e).__name__,
            )
            raise IssueIncompleteError() from e

        logger.info(
            "token_issued",
            order_id=purchase_ref,
            token_tail=token_tail(token_id),
            max_uses=max_uses,
            expires_at=expires_at.isoformat(),
        )
        return IssuedToken(
            token_id=token_id,
            resource_key=resource_key,
            purchase_ref=purchase_ref,
            max_uses=max_uses,
            created_at=now,
            expires_at=expires_at,
        )
