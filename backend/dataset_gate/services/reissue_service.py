"""Admin token re-issuance and revocation.

Support staff re-issue a download link for a completed order (lost email,
exhausted uses). The order's current token is revoked on a best-effort
basis and a fresh token is minted.

WHY BEST-EFFORT REVOCATION:
- The customer paid; a store hiccup while revoking the old link must not
  block the new one
- An unrevoked old token still expires on its own and stays capped
"""

from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime, timedelta

import structlog

from dataset_gate.core.config import Settings, settings
from dataset_gate.core.errors import (
    InvalidStateError,
    NotFoundError,
    ServiceNotConfiguredError,
    TokenNotFoundError,
    UpstreamFailureError,
    ValidationError,
)
from dataset_gate.core.logging import token_tail
from dataset_gate.providers.errors import StoreError
from dataset_gate.providers.storage.base import BlobStore
from dataset_gate.repositories.purchase_repository import PurchaseRepository, now_ms
from dataset_gate.repositories.token_repository import TokenRepository
from dataset_gate.schemas.orders import PurchaseRecord, is_valid_order_id
from dataset_gate.schemas.tokens import ReissueResult, UsageState
from dataset_gate.services.optimistic_update import (
    RetryPolicy,
    UpdateConflictError,
    update_with_retry,
)
from dataset_gate.services.redemption_service import is_valid_token_id
from dataset_gate.services.resource_resolver import ResourceResolver
from dataset_gate.services.token_issuer import TokenIssuer

logger = structlog.get_logger()

# Revoked tokens are pushed this far past the grace window
_REVOKE_MARGIN = timedelta(seconds=1)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ReissueService:
    """Revokes and re-issues download tokens for completed orders.

    Args:
        store: Object store.
        issuer: Token issuer for the replacement token.
        resolver: Resolves the artifact key when the order has none.
        retry_policy: Conditional-write budget for revocation and the
            purchase record.
        token_ttl_seconds: Lifetime of the replacement token.
        max_uses: Cap of the replacement token.
        grace_period_seconds: Redemption grace; revocation backdates past it.
        clock: Returns the current aware UTC time (injectable for tests).
    """

    def __init__(
        self,
        store: BlobStore,
        *,
        issuer: TokenIssuer,
        resolver: ResourceResolver,
        retry_policy: RetryPolicy,
        token_ttl_seconds: int,
        max_uses: int,
        grace_period_seconds: float,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._issuer = issuer
        self._resolver = resolver
        self._retry_policy = retry_policy
        self._token_ttl_seconds = token_ttl_seconds
        self._max_uses = max_uses
        self._grace = timedelta(seconds=grace_period_seconds)
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        store: BlobStore,
        config: Settings | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> "ReissueService":
        """Build a service wired to configuration."""
        config = config or settings
        return cls(
            store,
            issuer=TokenIssuer(store, clock=clock),
            resolver=ResourceResolver(
                store,
                default_key=config.csv_object_key,
                manifest_key=config.s3_manifest_key,
            ),
            retry_policy=RetryPolicy.from_settings(config),
            token_ttl_seconds=config.token_ttl_seconds,
            max_uses=config.max_token_uses,
            grace_period_seconds=config.grace_period_seconds,
            clock=clock,
        )

    async def revoke(self, token_id: str) -> bool:
        """Expire a token immediately and cap it at its current uses.

        Never raises for store or contention failures; they are logged.

        Returns:
            True if the revocation was written.
        """
        if not is_valid_token_id(token_id):
            logger.warning("revoke_skipped_invalid_token")
            return False

        async def load() -> UsageState | None:
            return await TokenRepository.get_state(self._store, token_id)

        def mutate(current: UsageState | None) -> UsageState:
            if current is None:
                raise TokenNotFoundError()
            # max stays >= 1 so the state still parses; expiry does the denying
            return replace(
                current,
                expires_at=self._clock() - self._grace - _REVOKE_MARGIN,
                max_uses=max(current.uses, 1),
            )

        async def write(current: UsageState | None, proposed: UsageState) -> None:
            expected = current.version_tag if current is not None else ""
            await TokenRepository.replace_state(
                self._store,
                token_id,
                proposed,
                expected_version_tag=expected,
            )

        try:
            await update_with_retry(
                load,
                mutate,
                write,
                self._retry_policy,
                log_context={"token_tail": token_tail(token_id)},
            )
        except (TokenNotFoundError, UpdateConflictError, StoreError) as e:
            logger.warning(
                "token_revoke_failed",
                token_tail=token_tail(token_id),
                error=type(e).__name__,
            )
            return False

        logger.info("token_revoked", token_tail=token_tail(token_id))
        return True

    async def reissue(self, order_id: str) -> ReissueResult:
        """Revoke the order's current token and mint a replacement.

        Args:
            order_id: Completed order to re-issue for.

        Returns:
            ReissueResult with the new token.

        Raises:
            ValidationError: Malformed order id.
            NotFoundError: No purchase record for the order.
            InvalidStateError: The order is not COMPLETED.
            ServiceNotConfiguredError: No artifact key could be resolved.
            UpstreamFailureError: Store failure reading the order or minting.
            IssueIncompleteError: Replacement token minted without state.
        """
        if not is_valid_order_id(order_id):
            raise ValidationError("order_id required/invalid")

        try:
            purchase = await PurchaseRepository.get(self._store, order_id)
        except StoreError as e:
            logger.error("purchase_read_failed", order_id=order_id, error=type(e).__name__)
            raise UpstreamFailureError() from e
        if purchase is None:
            raise NotFoundError("Order", order_id)
        if not purchase.is_completed:
            raise InvalidStateError(
                f"Order is not completed (status: {purchase.status or 'UNKNOWN'})"
            )

        previous_token_id = purchase.token
        revoked = await self.revoke(previous_token_id) if previous_token_id else False

        resource_key = await self._resolver.resolve(purchase.csv_key)
        if not resource_key:
            raise ServiceNotConfiguredError("Server not configured for CSV key.")

        issued = await self._issuer.issue(
            order_id,
            resource_key,
            ttl_seconds=self._token_ttl_seconds,
            max_uses=self._max_uses,
        )

        def record_reissue(current: PurchaseRecord | None) -> PurchaseRecord:
            base = current or purchase
            history = list(base.previous_tokens)
            for old in (previous_token_id, base.token):
                if old and old != issued.token_id and old not in history:
                    history.append(old)
            return base.model_copy(
                update={
                    "token": issued.token_id,
                    "previous_tokens": history,
                    "reissued_at": now_ms(),
                    "csv_key": resource_key,
                }
            )

        try:
            await PurchaseRepository.update(
                self._store, order_id, record_reissue, self._retry_policy
            )
        except (StoreError, UpdateConflictError) as e:
            # The new token is valid; support can still hand it out
            logger.error(
                "purchase_update_failed",
                order_id=order_id,
                token_tail=token_tail(issued.token_id),
                error=type(e).__name__,
            )

        logger.info(
            "token_reissued",
            order_id=order_id,
            token_tail=token_tail(issued.token_id),
            previous_token_tail=(
                token_tail(previous_token_id) if previous_token_id else None
            ),
            revoked=revoked,
            max_uses=issued.max_uses,
            expires_at=issued.expires_at.isoformat(),
        )
        return ReissueResult(
            order_id=order_id,
            token=issued,
            previous_token_id=previous_token_id,
            revoked=revoked,
        )
