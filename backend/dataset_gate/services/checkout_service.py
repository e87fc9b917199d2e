"""Checkout: order creation, capture with token minting, webhook reconciliation.

Capture flow:
1. Idempotency: a COMPLETED order with a token returns that token
2. Capture with the gateway
3. Verify status, then amount and currency exactly against configuration
4. Resolve the artifact key
5. Mint a token and persist a trimmed purchase record

Every failure after step 1 persists a diagnostic snapshot (status, stage,
trimmed payload) so support can see what happened, unless the order is
already COMPLETED.

Captures and webhooks for the same order write the same purchase record;
every write is a conditional read-merge-write so neither erases the other.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import structlog

from dataset_gate.core.config import Settings, settings
from dataset_gate.core.errors import (
    PaymentRejectedError,
    ServiceNotConfiguredError,
    UpstreamFailureError,
    ValidationError,
)
from dataset_gate.core.logging import token_tail
from dataset_gate.providers.errors import PaymentGatewayError, StoreError
from dataset_gate.providers.payments.base import CaptureResult, PaymentGateway
from dataset_gate.providers.storage.base import BlobStore
from dataset_gate.repositories.purchase_repository import PurchaseRepository, now_ms
from dataset_gate.schemas.orders import (
    STATUS_AMOUNT_MISMATCH,
    STATUS_COMPLETED,
    STATUS_CONFIG_ERROR,
    STATUS_ERROR,
    PurchaseRecord,
    is_valid_order_id,
)
from dataset_gate.services.optimistic_update import (
    RetryPolicy,
    UpdateConflictError,
)
from dataset_gate.services.resource_resolver import ResourceResolver
from dataset_gate.services.token_issuer import TokenIssuer

logger = structlog.get_logger()

# Error payload keys worth keeping in a diagnostic snapshot
_ERROR_PAYLOAD_FIELDS = ("name", "message", "debug_id", "status", "details")
_MAX_RAW_TEXT = 2000

_CAPTURE_EVENT_PREFIX = "PAYMENT.CAPTURE."


@dataclass(frozen=True)
class CaptureOutcome:
    """Result of a successful capture.

    Attributes:
        token_id: Download token for the order.
        already_processed: True when an earlier capture had minted it.
    """

    token_id: str
    already_processed: bool = False


def _trim_error_payload(raw: Any) -> Any:
    """Keep the diagnostic parts of a gateway error body."""
    if isinstance(raw, dict):
        return {k: raw[k] for k in _ERROR_PAYLOAD_FIELDS if k in raw}
    if isinstance(raw, str):
        return raw[:_MAX_RAW_TEXT]
    return None


def _get(node: Any, key: str) -> Any:
    """node[key] when node is a JSON object, else None."""
    return node.get(key) if isinstance(node, dict) else None


def _first(node: Any) -> Any:
    """First element when node is a non-empty JSON array, else None."""
    return node[0] if isinstance(node, list) and node else None


def resolve_webhook_order_id(event: Mapping[str, Any]) -> str | None:
    """Find the order id in a webhook event.

    Checked in order: resource.id, resource.supplementary_data.related_ids
    .order_id, then the first capture's related order id. Nodes of an
    unexpected type are treated as absent.
    """
    resource = event.get("resource")
    if not isinstance(resource, dict):
        return None

    related = _get(_get(resource, "supplementary_data"), "related_ids")
    unit = _first(_get(resource, "purchase_units"))
    capture = _first(_get(_get(unit, "payments"), "captures"))
    capture_related = _get(_get(capture, "supplementary_data"), "related_ids")
    related_order = _get(related, "order_id")
    capture_order = _get(capture_related, "order_id")

    # Capture events carry the capture id as resource.id
    event_type = str(event.get("event_type") or "")
    if event_type.startswith(_CAPTURE_EVENT_PREFIX):
        candidates = [related_order, capture_order]
    else:
        candidates = [resource.get("id"), related_order, capture_order]
    for candidate in candidates:
        if isinstance(candidate, str) and candidate:
            return candidate
    return None


class CheckoutService:
    """Sells the artifact through a payment gateway.

    Args:
        store: Object store for purchase records and tokens.
        gateway: Payment gateway.
        issuer: Token issuer.
        resolver: Resolves the artifact key to sell.
        retry_policy: Conditional-write budget for purchase records.
        price: Expected amount, e.g. "9.00".
        currency: Expected currency code.
        description: Order line description shown by the gateway.
        brand_name: Merchant name shown by the gateway.
        token_ttl_seconds: Lifetime of minted tokens.
        max_uses: Cap of minted tokens.
    """

    def __init__(
        self,
        store: BlobStore,
        gateway: PaymentGateway,
        *,
        issuer: TokenIssuer,
        resolver: ResourceResolver,
        retry_policy: RetryPolicy,
        price: str,
        currency: str,
        description: str,
        brand_name: str,
        token_ttl_seconds: int,
        max_uses: int,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._issuer = issuer
        self._resolver = resolver
        self._retry_policy = retry_policy
        self._price = price
        self._currency = currency
        self._description = description
        self._brand_name = brand_name
        self._token_ttl_seconds = token_ttl_seconds
        self._max_uses = max_uses

    @classmethod
    def from_settings(
        cls,
        store: BlobStore,
        gateway: PaymentGateway,
        config: Settings | None = None,
    ) -> "CheckoutService":
        """Build a service wired to configuration."""
        config = config or settings
        return cls(
            store,
            gateway,
            issuer=TokenIssuer(store),
            resolver=ResourceResolver(
                store,
                # Capture resolves config first, then the manifest
                default_key=config.csv_object_key,
                manifest_key=config.s3_manifest_key,
            ),
            retry_policy=RetryPolicy.from_settings(config),
            price=config.price_usd,
            currency=config.paypal_currency,
            description=config.product_description,
            brand_name=config.brand_name,
            token_ttl_seconds=config.token_ttl_seconds,
            max_uses=config.max_token_uses,
        )

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_order(self) -> str:
        """Create a gateway order at the configured price.

        Clients never supply the amount.

        Raises:
            UpstreamFailureError: Gateway unreachable or rejected the request.
        """
        try:
            order_id = await self._gateway.create_order(
                amount=self._price,
                currency=self._currency,
                description=self._description,
                brand_name=self._brand_name,
            )
        except PaymentGatewayError as e:
            logger.error("order_create_failed", error=str(e))
            raise UpstreamFailureError("Could not create order") from e

        logger.info("order_created", order_id=order_id, provider=self._gateway.provider_name)
        return order_id

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    async def _save_snapshot(self, order_id: str, **fields: Any) -> None:
        """Persist a diagnostic snapshot; never clobbers a COMPLETED record.

        Fields recorded by other writers (webhook breadcrumbs) are kept.
        """
        stage = fields.get("stage")

        def snapshot(current: PurchaseRecord | None) -> PurchaseRecord | None:
            if current is not None and current.is_completed:
                logger.warning(
                    "capture_snapshot_skipped_completed",
                    order_id=order_id,
                    stage=stage,
                )
                return None
            base = current or PurchaseRecord(order_id=order_id, created_at=now_ms())
            return base.model_copy(update={"note": None, "raw": None, **fields})

        try:
            await PurchaseRepository.update(
                self._store, order_id, snapshot, self._retry_policy
            )
        except (StoreError, UpdateConflictError) as e:
            logger.error(
                "capture_snapshot_failed",
                order_id=order_id,
                stage=stage,
                error=type(e).__name__,
            )

    async def capture_order(self, order_id: str) -> CaptureOutcome:
        """Capture an approved order and mint its download token.

        Idempotent: repeating a capture for a COMPLETED order returns the
        token already minted for it without calling the gateway.

        Raises:
            ValidationError: Malformed order id.
            UpstreamFailureError: Gateway or store failure.
            PaymentRejectedError: Not completed, or amount/currency mismatch.
            ServiceNotConfiguredError: No artifact key configured.
            IssueIncompleteError: Token minted without usage state.
        """
        if not is_valid_order_id(order_id):
            raise ValidationError("orderID required/invalid")

        try:
            existing = await PurchaseRepository.get(self._store, order_id)
        except StoreError as e:
            logger.error("purchase_read_failed", order_id=order_id, error=type(e).__name__)
            raise UpstreamFailureError() from e

        if existing is not None and existing.is_completed and existing.token:
            logger.info(
                "capture_already_processed",
                order_id=order_id,
                token_tail=token_tail(existing.token),
            )
            return CaptureOutcome(token_id=existing.token, already_processed=True)

        try:
            result = await self._gateway.capture_order(order_id)
        except PaymentGatewayError as e:
            logger.error("capture_request_failed", order_id=order_id, error=str(e))
            raise UpstreamFailureError("Payment capture failed") from e

        if not result.ok:
            logger.warning(
                "capture_rejected_by_gateway",
                order_id=order_id,
                http_status=result.http_status,
                status=result.status,
            )
            await self._save_snapshot(
                order_id,
                status=result.status if result.status != "UNKNOWN" else STATUS_ERROR,
                stage="capture_error",
                note="Non-OK capture response",
                raw=_trim_error_payload(result.raw),
            )
            raise UpstreamFailureError("Payment capture failed")

        if result.status != STATUS_COMPLETED:
            logger.warning("capture_not_completed", order_id=order_id, status=result.status)
            await self._save_snapshot(
                order_id,
                status=result.status or "UNKNOWN",
                stage="capture_not_completed",
                raw=_summarize(result),
            )
            raise PaymentRejectedError("PAYMENT_NOT_COMPLETED", "Payment not completed")

        if result.amount != self._price or result.currency != self._currency:
            logger.error(
                "capture_amount_mismatch",
                order_id=order_id,
                amount=result.amount,
                currency=result.currency,
                expected_amount=self._price,
                expected_currency=self._currency,
            )
            await self._save_snapshot(
                order_id,
                status=STATUS_AMOUNT_MISMATCH,
                stage="verify_amount",
                raw={
                    "amount": result.amount,
                    "currency": result.currency,
                    "expected": {"amount": self._price, "currency": self._currency},
                },
            )
            raise PaymentRejectedError("AMOUNT_MISMATCH", "Amount mismatch")

        resource_key = await self._resolver.resolve()
        if not resource_key:
            logger.error("capture_resource_key_unresolved", order_id=order_id)
            await self._save_snapshot(
                order_id,
                status=STATUS_CONFIG_ERROR,
                stage="resolve_csv_key",
                note="Missing CSV_OBJECT_KEY and manifest.latest",
            )
            raise ServiceNotConfiguredError("Server not configured for CSV key.")

        issued = await self._issuer.issue(
            order_id,
            resource_key,
            ttl_seconds=self._token_ttl_seconds,
            max_uses=self._max_uses,
        )

        def complete(current: PurchaseRecord | None) -> PurchaseRecord:
            base = current or PurchaseRecord(order_id=order_id, created_at=now_ms())
            return base.model_copy(
                update={
                    "status": STATUS_COMPLETED,
                    "stage": None,
                    "note": None,
                    "token": issued.token_id,
                    "amount": result.amount,
                    "currency": result.currency,
                    "payer": result.payer,
                    "capture_id": result.capture_id,
                    "csv_key": resource_key,
                    "created_at": base.created_at or now_ms(),
                    "raw": _summarize(result),
                }
            )

        try:
            await PurchaseRepository.update(
                self._store, order_id, complete, self._retry_policy
            )
        except (StoreError, UpdateConflictError) as e:
            # Payment is captured and the token is valid; hand it out anyway
            logger.error(
                "purchase_write_failed",
                order_id=order_id,
                token_tail=token_tail(issued.token_id),
                error=type(e).__name__,
            )

        logger.info(
            "capture_completed",
            order_id=order_id,
            token_tail=token_tail(issued.token_id),
            capture_id=result.capture_id,
        )
        return CaptureOutcome(token_id=issued.token_id)

    # ------------------------------------------------------------------
    # Webhook
    # ------------------------------------------------------------------

    async def handle_webhook(
        self,
        headers: Mapping[str, str],
        event: dict[str, Any],
    ) -> str | None:
        """Verify a gateway webhook and record breadcrumbs on the order.

        Returns:
            The reconciled order id, or None when the event names no order.

        Raises:
            ValidationError: Empty body or signature verification failed.
            UpstreamFailureError: Gateway or store failure.
        """
        if not event:
            raise ValidationError("Empty webhook body")

        lowered = {k.lower(): v for k, v in headers.items()}
        try:
            verified = await self._gateway.verify_webhook(lowered, event)
        except PaymentGatewayError as e:
            logger.error("webhook_verification_failed", error=str(e))
            raise UpstreamFailureError() from e

        event_type = event.get("event_type")
        if not isinstance(event_type, str):
            event_type = None
        logger.info("webhook_verified", event_type=event_type, verified=verified)
        if not verified:
            raise ValidationError("Bad signature")

        order_id = resolve_webhook_order_id(event)
        if order_id is None or not is_valid_order_id(order_id):
            logger.warning("webhook_without_order_id", event_type=event_type)
            return None

        resource = event.get("resource")
        gateway_status = _get(resource, "status")
        if not isinstance(gateway_status, str):
            gateway_status = None
        # Capture events carry the capture id as resource.id
        is_capture_event = (event_type or "").startswith(_CAPTURE_EVENT_PREFIX)
        capture_id = _get(resource, "id") if is_capture_event else None
        if not isinstance(capture_id, str):
            capture_id = None
        seen_at = now_ms()

        def reconcile(current: PurchaseRecord | None) -> PurchaseRecord:
            patch: dict[str, Any] = {"last_event": event_type, "webhook_seen": seen_at}
            if gateway_status:
                patch["gateway_status"] = gateway_status
                # Webhooks never downgrade a completed order
                if current is None or not current.is_completed:
                    patch["status"] = gateway_status
            if capture_id:
                patch["capture_id"] = capture_id
            base = current or PurchaseRecord(order_id=order_id, created_at=seen_at)
            return base.model_copy(update=patch)

        try:
            await PurchaseRepository.update(
                self._store, order_id, reconcile, self._retry_policy
            )
        except (StoreError, UpdateConflictError) as e:
            logger.error("webhook_reconcile_failed", order_id=order_id, error=type(e).__name__)
            raise UpstreamFailureError() from e

        logger.info("webhook_reconciled", order_id=order_id, event_type=event_type)
        return order_id


def _summarize(result: CaptureResult) -> dict[str, Any] | None:
    """Reduce a capture payload to id/intent/status."""
    if not isinstance(result.raw, dict):
        return None
    return {
        "id": result.raw.get("id"),
        "intent": result.raw.get("intent"),
        "status": result.raw.get("status"),
    }
