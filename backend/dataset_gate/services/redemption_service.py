"""Download token redemption.

Validates a token, atomically consumes one use, and returns a short-lived
signed URL for the artifact. Also provides a non-consuming peek.

Lifecycle: UNKNOWN -> ACTIVE -> (EXHAUSTED | EXPIRED). Both redeem and peek
go through classify() so they can never disagree about a token's status.

WHY CONDITIONAL WRITES (not read-modify-write):
- Concurrent redemptions of one token each read uses=N; only the first
  conditional replace against that version tag succeeds
- Losers re-read, re-classify, and either retry from the new count or are
  denied, so uses never exceeds max_uses
"""

import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import structlog

from dataset_gate.core.config import Settings, settings
from dataset_gate.core.errors import (
    DownloadLimitReachedError,
    RedemptionConflictError,
    ServiceNotConfiguredError,
    TokenExpiredError,
    TokenNotFoundError,
    UpstreamFailureError,
    ValidationError,
)
from dataset_gate.core.logging import token_tail
from dataset_gate.providers.errors import StoreError
from dataset_gate.providers.storage.base import BlobStore
from dataset_gate.repositories.token_repository import TokenRepository
from dataset_gate.schemas.tokens import (
    RedemptionResult,
    TokenRecord,
    TokenStatus,
    UsageSnapshot,
    UsageState,
)
from dataset_gate.services.optimistic_update import (
    RetryPolicy,
    UpdateConflictError,
    update_with_retry,
)
from dataset_gate.services.resource_resolver import ResourceResolver

logger = structlog.get_logger()

# Canonical UUID text, any case
TOKEN_ID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def is_valid_token_id(value: str | None) -> bool:
    """Check that value is canonical UUID text."""
    return isinstance(value, str) and TOKEN_ID_PATTERN.match(value) is not None


def _utcnow() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Classification
# =============================================================================


@dataclass(frozen=True)
class Classification:
    """A token's status at one instant.

    Attributes:
        status: ACTIVE, EXHAUSTED or EXPIRED.
        uses: Current use count.
        max_uses: Cap in effect.
        remaining: Uses left (0 unless ACTIVE).
        expires_at: Effective expiry.
    """

    status: TokenStatus
    uses: int
    max_uses: int
    remaining: int
    expires_at: datetime


def classify(
    state: UsageState,
    token: TokenRecord,
    now: datetime,
    grace: timedelta,
) -> Classification:
    """Classify a known token.

    The state's expiry wins over the token record's because revocation
    rewrites it. Expiry is checked before the cap: an expired token reports
    EXPIRED even if it also ran out of uses.
    """
    expires_at = state.expires_at or token.expires_at
    if now > expires_at + grace:
        status = TokenStatus.EXPIRED
    elif state.max_uses - state.uses <= 0:
        status = TokenStatus.EXHAUSTED
    else:
        status = TokenStatus.ACTIVE

    remaining = state.max_uses - state.uses if status == TokenStatus.ACTIVE else 0
    return Classification(
        status=status,
        uses=state.uses,
        max_uses=state.max_uses,
        remaining=remaining,
        expires_at=expires_at,
    )


# =============================================================================
# Service
# =============================================================================


class RedemptionService:
    """Redeems and inspects download tokens.

    Args:
        store: Object store.
        resolver: Resolves the artifact key for tokens without one.
        retry_policy: Conditional-write budget and jitter.
        grace_period_seconds: Tolerance added to expiry (clock skew).
        download_ttl_seconds: Lifetime of the signed URL.
        download_filename: Attachment filename for the signed URL.
        download_content_type: Content-Type for the signed URL response.
        limit_retry_after_seconds: Retry-After hint on limit denials.
        clock: Returns the current aware UTC time (injectable for tests).
    """

    def __init__(
        self,
        store: BlobStore,
        *,
        resolver: ResourceResolver,
        retry_policy: RetryPolicy,
        grace_period_seconds: float,
        download_ttl_seconds: int,
        download_filename: str,
        download_content_type: str,
        limit_retry_after_seconds: int,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._retry_policy = retry_policy
        self._grace = timedelta(seconds=grace_period_seconds)
        self._download_ttl_seconds = download_ttl_seconds
        self._download_filename = download_filename
        self._download_content_type = download_content_type
        self._limit_retry_after_seconds = limit_retry_after_seconds
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        store: BlobStore,
        config: Settings | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> "RedemptionService":
        """Build a service wired to configuration."""
        config = config or settings
        return cls(
            store,
            resolver=ResourceResolver(
                store,
                default_key=config.csv_object_key,
                manifest_key=config.s3_manifest_key,
            ),
            retry_policy=RetryPolicy.from_settings(config),
            grace_period_seconds=config.grace_period_seconds,
            download_ttl_seconds=config.download_ttl_seconds,
            download_filename=config.download_filename,
            download_content_type=config.download_content_type,
            limit_retry_after_seconds=config.limit_retry_after_seconds,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load(self, token_id: str) -> tuple[str, TokenRecord, UsageState]:
        """Validate the id and load both records.

        Returns:
            (canonical token id, token record, usage state).

        Raises:
            ValidationError: Malformed id (nothing is read).
            TokenNotFoundError: Unknown token, or state missing/unparsable.
            UpstreamFailureError: Store failure.
        """
        if not is_valid_token_id(token_id):
            raise ValidationError("Invalid token format")
        token_id = token_id.lower()

        try:
            token = await TokenRepository.get_token(self._store, token_id)
            if token is None:
                logger.info("token_not_found", token_tail=token_tail(token_id))
                raise TokenNotFoundError()
            state = await TokenRepository.get_state(self._store, token_id)
        except StoreError as e:
            logger.error(
                "token_read_failed",
                token_tail=token_tail(token_id),
                error=type(e).__name__,
            )
            raise UpstreamFailureError() from e

        if state is None:
            # Incomplete issue or corrupted metadata; never fabricate state
            logger.warning("token_state_missing", token_tail=token_tail(token_id))
            raise TokenNotFoundError()
        return token_id, token, state

    def _deny(self, c: Classification) -> None:
        """Raise the denial for a non-active classification."""
        if c.status == TokenStatus.EXPIRED:
            raise TokenExpiredError(
                uses=c.uses,
                max_uses=c.max_uses,
                expires_at=c.expires_at,
            )
        if c.status == TokenStatus.EXHAUSTED:
            raise DownloadLimitReachedError(
                uses=c.uses,
                max_uses=c.max_uses,
                expires_at=c.expires_at,
                retry_after_seconds=self._limit_retry_after_seconds,
            )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def peek(self, token_id: str) -> UsageSnapshot:
        """Report a token's usage without consuming a use.

        Raises:
            ValidationError: Malformed id.
            TokenNotFoundError: Unknown token or missing state.
            UpstreamFailureError: Store failure.
        """
        _, token, state = await self._load(token_id)
        c = classify(state, token, self._clock(), self._grace)
        return UsageSnapshot(
            status=c.status,
            uses=c.uses,
            max_uses=c.max_uses,
            remaining=c.remaining,
            expires_at=c.expires_at,
            last=c.status == TokenStatus.ACTIVE and c.remaining == 1,
        )

    async def redeem(self, token_id: str) -> RedemptionResult:
        """Consume one use and return a signed download URL.

        Steps: validate id -> load token and state -> classify -> resolve
        artifact key -> conditional increment (retried) -> presign.

        Raises:
            ValidationError: Malformed id.
            TokenNotFoundError: Unknown token or missing state.
            TokenExpiredError: Past expiry plus grace.
            DownloadLimitReachedError: No uses left.
            ServiceNotConfiguredError: No artifact key could be resolved.
            RedemptionConflictError: Retry budget exhausted under contention.
            UpstreamFailureError: Store failure.
        """
        token_id, token, state = await self._load(token_id)
        self._deny(classify(state, token, self._clock(), self._grace))

        # Resolved before the increment so a misconfiguration costs no use
        resource_key = await self._resolver.resolve(token.resource_key)
        if not resource_key:
            logger.error("resource_key_unresolved", token_tail=token_tail(token_id))
            raise ServiceNotConfiguredError(
                "File not configured (no token key, CSV_OBJECT_KEY, or manifest.latest)."
            )

        async def load() -> UsageState | None:
            return await TokenRepository.get_state(self._store, token_id)

        def mutate(current: UsageState | None) -> UsageState:
            if current is None:
                raise TokenNotFoundError()
            self._deny(classify(current, token, self._clock(), self._grace))
            return current.incremented()

        async def write(current: UsageState | None, proposed: UsageState) -> None:
            # mutate() already rejected a missing state
            expected = current.version_tag if current is not None else ""
            await TokenRepository.replace_state(
                self._store,
                token_id,
                proposed,
                expected_version_tag=expected,
            )

        try:
            written = await update_with_retry(
                load,
                mutate,
                write,
                self._retry_policy,
                initial=state,
                log_context={"token_tail": token_tail(token_id)},
            )
        except UpdateConflictError as e:
            logger.warning(
                "redemption_conflict",
                token_tail=token_tail(token_id),
                attempts=e.attempts,
                reason=type(e.last_error).__name__,
            )
            raise RedemptionConflictError() from e
        except StoreError as e:
            logger.error(
                "redemption_write_failed",
                token_tail=token_tail(token_id),
                error=type(e).__name__,
            )
            raise UpstreamFailureError() from e

        try:
            url = await self._store.presign_get(
                resource_key,
                expires_in=self._download_ttl_seconds,
                filename=self._download_filename,
                content_type=self._download_content_type,
            )
        except StoreError as e:
            logger.error(
                "presign_failed",
                token_tail=token_tail(token_id),
                uses=written.uses,
                error=type(e).__name__,
            )
            raise UpstreamFailureError() from e

        remaining = max(0, written.max_uses - written.uses)
        logger.info(
            "token_redeemed",
            token_tail=token_tail(token_id),
            uses=written.uses,
            max_uses=written.max_uses,
        )
        return RedemptionResult(
            url=url,
            uses=written.uses,
            max_uses=written.max_uses,
            remaining=remaining,
            expires_at=written.expires_at or token.expires_at,
            last=written.uses >= written.max_uses,
        )
