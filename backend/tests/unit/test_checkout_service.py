"""Tests for checkout: order creation, capture, and webhook reconciliation.

Payment capture must be verified server-side before a token is minted, and
a repeated capture of a completed order must never mint a second token.
"""

from unittest.mock import AsyncMock, patch

import pytest

from dataset_gate.core.errors import (
    PaymentRejectedError,
    ServiceNotConfiguredError,
    UpstreamFailureError,
    ValidationError,
)
from dataset_gate.providers.errors import PaymentGatewayError, StoreUnavailableError
from dataset_gate.providers.payments.base import CaptureResult
from dataset_gate.providers.payments.mock_adapter import MockPaymentGateway
from dataset_gate.providers.storage.memory_adapter import InMemoryBlobStore
from dataset_gate.repositories.purchase_repository import PurchaseRepository, purchase_key
from dataset_gate.repositories.token_repository import TokenRepository
from dataset_gate.schemas.orders import PurchaseRecord
from dataset_gate.services.checkout_service import (
    CheckoutService,
    resolve_webhook_order_id,
)
from dataset_gate.services.resource_resolver import ResourceResolver
from dataset_gate.services.token_issuer import TokenIssuer
from tests.conftest import FAST_RETRY, TEST_ORDER_ID, TEST_RESOURCE_KEY, FakeClock


def _make_service(
    store: InMemoryBlobStore,
    gateway: MockPaymentGateway,
    clock: FakeClock,
    *,
    default_key: str = TEST_RESOURCE_KEY,
) -> CheckoutService:
    return CheckoutService(
        store,
        gateway,
        issuer=TokenIssuer(store, clock=clock),
        resolver=ResourceResolver(store, default_key=default_key, manifest_key=""),
        retry_policy=FAST_RETRY,
        price="9.00",
        currency="USD",
        description="Vanished Brands CSV",
        brand_name="Vanished Brands",
        token_ttl_seconds=86_400,
        max_uses=3,
    )


@pytest.fixture
def gateway() -> MockPaymentGateway:
    return MockPaymentGateway(default_amount="9.00", default_currency="USD")


@pytest.fixture
def checkout(store, gateway, clock) -> CheckoutService:
    return _make_service(store, gateway, clock)


def _capture_calls(gateway: MockPaymentGateway) -> int:
    return sum(1 for c in gateway.calls if c["method"] == "capture_order")


# =============================================================================
# Create
# =============================================================================


class TestCreateOrder:
    """Order creation at the configured price."""

    @pytest.mark.asyncio
    async def test_uses_configured_price(self, checkout, gateway):
        """The server decides the amount, currency and labels."""
        order_id = await checkout.create_order()

        assert order_id.startswith("MOCK")
        assert gateway.calls == [
            {
                "method": "create_order",
                "amount": "9.00",
                "currency": "USD",
                "description": "Vanished Brands CSV",
                "brand_name": "Vanished Brands",
            }
        ]

    @pytest.mark.asyncio
    async def test_gateway_failure(self, checkout, gateway):
        """Gateway errors surface as upstream failures."""
        with (
            patch.object(
                gateway,
                "create_order",
                new=AsyncMock(side_effect=PaymentGatewayError("token error 401")),
            ),
            pytest.raises(UpstreamFailureError, match="Could not create order"),
        ):
            await checkout.create_order()


# =============================================================================
# Capture
# =============================================================================


class TestCapture:
    """Successful and idempotent capture."""

    @pytest.mark.asyncio
    async def test_mints_token_and_records_purchase(self, checkout, store):
        """A completed capture mints a token bound to the artifact."""
        outcome = await checkout.capture_order(TEST_ORDER_ID)

        assert outcome.already_processed is False
        token = await TokenRepository.get_token(store, outcome.token_id)
        assert token.resource_key == TEST_RESOURCE_KEY
        assert token.purchase_ref == TEST_ORDER_ID
        state = await TokenRepository.get_state(store, outcome.token_id)
        assert (state.uses, state.max_uses) == (0, 3)

        purchase = await PurchaseRepository.get(store, TEST_ORDER_ID)
        assert purchase.status == "COMPLETED"
        assert purchase.token == outcome.token_id
        assert purchase.amount == "9.00"
        assert purchase.currency == "USD"
        assert purchase.capture_id == f"CAP-{TEST_ORDER_ID}"
        assert purchase.csv_key == TEST_RESOURCE_KEY
        assert purchase.payer == {"payer_id": "MOCKPAYER", "email": "buyer@example.com"}
        assert purchase.raw == {"id": TEST_ORDER_ID, "intent": "CAPTURE", "status": "COMPLETED"}

    @pytest.mark.asyncio
    async def test_repeat_capture_is_idempotent(self, checkout, gateway, store):
        """A second capture returns the same token without calling the gateway."""
        first = await checkout.capture_order(TEST_ORDER_ID)
        second = await checkout.capture_order(TEST_ORDER_ID)

        assert second.token_id == first.token_id
        assert second.already_processed is True
        assert _capture_calls(gateway) == 1
        token_records = [k for k in store.keys() if k.startswith("tokens/")]
        assert len(token_records) == 1

    @pytest.mark.asyncio
    async def test_retry_after_failed_snapshot_captures_again(self, checkout, gateway, store):
        """A non-completed earlier attempt does not short-circuit."""
        await PurchaseRepository.put(
            store,
            PurchaseRecord(order_id=TEST_ORDER_ID, status="ERROR", stage="capture_error"),
        )

        outcome = await checkout.capture_order(TEST_ORDER_ID)

        assert outcome.already_processed is False
        purchase = await PurchaseRepository.get(store, TEST_ORDER_ID)
        assert purchase.status == "COMPLETED"
        assert purchase.stage is None

    @pytest.mark.asyncio
    async def test_purchase_write_failure_still_returns_token(self, checkout, store):
        """The token is handed out even if the record cannot be written."""
        with patch.object(
            PurchaseRepository,
            "update",
            new=AsyncMock(side_effect=StoreUnavailableError("timeout")),
        ):
            outcome = await checkout.capture_order(TEST_ORDER_ID)

        assert await TokenRepository.get_state(store, outcome.token_id) is not None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("order_id", ["", "abc", "ORDER 12345", "../orders/x"])
    async def test_invalid_order_id(self, checkout, gateway, order_id):
        """Malformed ids never reach the gateway."""
        with pytest.raises(ValidationError):
            await checkout.capture_order(order_id)
        assert gateway.calls == []


class TestCaptureVerification:
    """Captures that fail verification mint nothing and leave a snapshot."""

    @pytest.mark.asyncio
    async def test_amount_mismatch(self, checkout, gateway, store):
        """A wrong amount is rejected and recorded."""
        gateway.set_capture_result(
            TEST_ORDER_ID,
            CaptureResult(
                ok=True, http_status=201, status="COMPLETED", amount="1.00", currency="USD"
            ),
        )

        with pytest.raises(PaymentRejectedError) as exc_info:
            await checkout.capture_order(TEST_ORDER_ID)

        assert exc_info.value.code == "AMOUNT_MISMATCH"
        assert exc_info.value.status_code == 400
        purchase = await PurchaseRepository.get(store, TEST_ORDER_ID)
        assert purchase.status == "AMOUNT_MISMATCH"
        assert purchase.stage == "verify_amount"
        assert purchase.raw["expected"] == {"amount": "9.00", "currency": "USD"}
        assert not any(k.startswith("tokens") for k in store.keys())

    @pytest.mark.asyncio
    async def test_currency_mismatch(self, checkout, gateway):
        """Right amount in the wrong currency is also a mismatch."""
        gateway.set_capture_result(
            TEST_ORDER_ID,
            CaptureResult(
                ok=True, http_status=201, status="COMPLETED", amount="9.00", currency="EUR"
            ),
        )

        with pytest.raises(PaymentRejectedError, match="Amount mismatch"):
            await checkout.capture_order(TEST_ORDER_ID)

    @pytest.mark.asyncio
    async def test_not_completed(self, checkout, gateway, store):
        """A pending capture is rejected and its status recorded."""
        gateway.set_capture_result(
            TEST_ORDER_ID,
            CaptureResult(
                ok=True,
                http_status=201,
                status="PENDING",
                raw={"id": TEST_ORDER_ID, "intent": "CAPTURE", "status": "PENDING"},
            ),
        )

        with pytest.raises(PaymentRejectedError) as exc_info:
            await checkout.capture_order(TEST_ORDER_ID)

        assert exc_info.value.code == "PAYMENT_NOT_COMPLETED"
        purchase = await PurchaseRepository.get(store, TEST_ORDER_ID)
        assert purchase.status == "PENDING"
        assert purchase.stage == "capture_not_completed"

    @pytest.mark.asyncio
    async def test_gateway_rejection(self, checkout, gateway, store):
        """Non-2xx captures keep a trimmed error payload."""
        gateway.set_capture_result(
            TEST_ORDER_ID,
            CaptureResult(
                ok=False,
                http_status=422,
                raw={
                    "name": "UNPROCESSABLE_ENTITY",
                    "debug_id": "abc123",
                    "links": [{"href": "https://example.com"}],
                },
            ),
        )

        with pytest.raises(UpstreamFailureError, match="Payment capture failed"):
            await checkout.capture_order(TEST_ORDER_ID)

        purchase = await PurchaseRepository.get(store, TEST_ORDER_ID)
        assert purchase.status == "ERROR"
        assert purchase.stage == "capture_error"
        assert purchase.raw == {"name": "UNPROCESSABLE_ENTITY", "debug_id": "abc123"}

    @pytest.mark.asyncio
    async def test_gateway_unreachable(self, checkout, gateway):
        """Transport errors are upstream failures."""
        with (
            patch.object(
                gateway,
                "capture_order",
                new=AsyncMock(side_effect=PaymentGatewayError("unreachable")),
            ),
            pytest.raises(UpstreamFailureError),
        ):
            await checkout.capture_order(TEST_ORDER_ID)

    @pytest.mark.asyncio
    async def test_no_artifact_configured(self, store, gateway, clock):
        """A paid order with no artifact key is a configuration error."""
        service = _make_service(store, gateway, clock, default_key="")

        with pytest.raises(ServiceNotConfiguredError):
            await service.capture_order(TEST_ORDER_ID)

        purchase = await PurchaseRepository.get(store, TEST_ORDER_ID)
        assert purchase.status == "CONFIG_ERROR"
        assert purchase.stage == "resolve_csv_key"

    @pytest.mark.asyncio
    async def test_snapshot_never_overwrites_completed(self, checkout, gateway, store):
        """A failure snapshot is skipped when the order is already COMPLETED."""
        # Completed but token missing (e.g. hand-edited): capture runs again
        await PurchaseRepository.put(
            store, PurchaseRecord(order_id=TEST_ORDER_ID, status="COMPLETED", note="keep")
        )
        gateway.set_capture_result(
            TEST_ORDER_ID,
            CaptureResult(ok=False, http_status=500, raw="Internal Server Error"),
        )

        with pytest.raises(UpstreamFailureError):
            await checkout.capture_order(TEST_ORDER_ID)

        purchase = await PurchaseRepository.get(store, TEST_ORDER_ID)
        assert purchase.status == "COMPLETED"
        assert purchase.note == "keep"


# =============================================================================
# Webhook
# =============================================================================


class TestResolveWebhookOrderId:
    """Order id extraction from webhook events."""

    def test_order_event_uses_resource_id(self):
        """Order events carry the order id as resource.id."""
        event = {"event_type": "CHECKOUT.ORDER.APPROVED", "resource": {"id": "ORDER123456"}}
        assert resolve_webhook_order_id(event) == "ORDER123456"

    def test_capture_event_uses_related_ids(self):
        """Capture events ignore resource.id (a capture id)."""
        event = {
            "event_type": "PAYMENT.CAPTURE.COMPLETED",
            "resource": {
                "id": "CAPTURE999999",
                "supplementary_data": {"related_ids": {"order_id": "ORDER123456"}},
            },
        }
        assert resolve_webhook_order_id(event) == "ORDER123456"

    def test_capture_event_from_purchase_units(self):
        """The first capture's related order id is the last resort."""
        event = {
            "event_type": "PAYMENT.CAPTURE.COMPLETED",
            "resource": {
                "id": "CAPTURE999999",
                "purchase_units": [
                    {
                        "payments": {
                            "captures": [
                                {
                                    "supplementary_data": {
                                        "related_ids": {"order_id": "ORDER654321"}
                                    }
                                }
                            ]
                        }
                    }
                ],
            },
        }
        assert resolve_webhook_order_id(event) == "ORDER654321"

    def test_no_order_id(self):
        """Events without any order reference resolve to None."""
        assert resolve_webhook_order_id({"event_type": "PAYMENT.CAPTURE.DENIED"}) is None

    @pytest.mark.parametrize(
        "resource",
        [
            "CAPTURE999999",
            ["CAPTURE999999"],
            {"id": "CAPTURE999999", "supplementary_data": "ORDER123456"},
            {"id": "CAPTURE999999", "supplementary_data": {"related_ids": ["ORDER123456"]}},
            {"id": "CAPTURE999999", "purchase_units": {"payments": {}}},
            {"id": "CAPTURE999999", "purchase_units": "ORDER123456"},
            {"id": "CAPTURE999999", "purchase_units": [None]},
            {"id": "CAPTURE999999", "purchase_units": [{"payments": []}]},
            {"id": "CAPTURE999999", "purchase_units": [{"payments": {"captures": "x"}}]},
            {"id": "CAPTURE999999", "purchase_units": [{"payments": {"captures": [7]}}]},
            {
                "id": "CAPTURE999999",
                "supplementary_data": {"related_ids": {"order_id": 123456}},
            },
        ],
    )
    def test_unexpected_node_types_resolve_to_none(self, resource):
        """Wrong JSON types anywhere along the path mean no order id."""
        event = {"event_type": "PAYMENT.CAPTURE.COMPLETED", "resource": resource}
        assert resolve_webhook_order_id(event) is None

    def test_malformed_branch_falls_back(self):
        """A broken related_ids node does not hide the capture's order id."""
        event = {
            "event_type": "PAYMENT.CAPTURE.COMPLETED",
            "resource": {
                "supplementary_data": "n/a",
                "purchase_units": [
                    {
                        "payments": {
                            "captures": [
                                {
                                    "supplementary_data": {
                                        "related_ids": {"order_id": "ORDER654321"}
                                    }
                                }
                            ]
                        }
                    }
                ],
            },
        }
        assert resolve_webhook_order_id(event) == "ORDER654321"

    def test_non_string_resource_id_on_order_event(self):
        """A numeric resource.id is not an order id."""
        event = {"event_type": "CHECKOUT.ORDER.APPROVED", "resource": {"id": 42}}
        assert resolve_webhook_order_id(event) is None


class TestWebhook:
    """Signature verification and reconciliation breadcrumbs."""

    _EVENT = {
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "resource": {
            "id": "CAPTURE999999",
            "status": "COMPLETED",
            "supplementary_data": {"related_ids": {"order_id": TEST_ORDER_ID}},
        },
    }

    @pytest.mark.asyncio
    async def test_records_breadcrumbs(self, checkout, store):
        """A verified event patches the order without minting a token."""
        order_id = await checkout.handle_webhook({"PayPal-Transmission-Id": "tx"}, self._EVENT)

        assert order_id == TEST_ORDER_ID
        purchase = await PurchaseRepository.get(store, TEST_ORDER_ID)
        assert purchase.last_event == "PAYMENT.CAPTURE.COMPLETED"
        assert purchase.gateway_status == "COMPLETED"
        assert purchase.capture_id == "CAPTURE999999"
        assert purchase.webhook_seen is not None
        assert purchase.token is None
        assert not any(k.startswith("tokens") for k in store.keys())

    @pytest.mark.asyncio
    async def test_never_downgrades_completed(self, checkout, store):
        """A later REFUNDED-style status is noted but does not replace COMPLETED."""
        outcome = await checkout.capture_order(TEST_ORDER_ID)
        event = {
            "event_type": "PAYMENT.CAPTURE.REVERSED",
            "resource": {
                "id": "CAPTURE999999",
                "status": "REVERSED",
                "supplementary_data": {"related_ids": {"order_id": TEST_ORDER_ID}},
            },
        }

        await checkout.handle_webhook({}, event)

        purchase = await PurchaseRepository.get(store, TEST_ORDER_ID)
        assert purchase.status == "COMPLETED"
        assert purchase.gateway_status == "REVERSED"
        assert purchase.token == outcome.token_id

    @pytest.mark.asyncio
    async def test_lowercases_headers_for_verification(self, checkout, gateway):
        """Header names reach the gateway lower-cased."""
        with patch.object(
            gateway, "verify_webhook", new=AsyncMock(return_value=True)
        ) as verify:
            await checkout.handle_webhook({"PayPal-Auth-Algo": "SHA256withRSA"}, self._EVENT)

        headers = verify.await_args.args[0]
        assert headers == {"paypal-auth-algo": "SHA256withRSA"}

    @pytest.mark.asyncio
    async def test_bad_signature(self, checkout, gateway, store):
        """Unverified events are rejected and change nothing."""
        gateway.webhook_valid = False

        with pytest.raises(ValidationError, match="Bad signature"):
            await checkout.handle_webhook({}, self._EVENT)
        assert store.keys() == []

    @pytest.mark.asyncio
    async def test_empty_event(self, checkout, gateway):
        """An empty body is rejected before verification."""
        with pytest.raises(ValidationError):
            await checkout.handle_webhook({}, {})
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_verification_unavailable(self, checkout, gateway):
        """Verification transport failures are upstream failures."""
        with (
            patch.object(
                gateway,
                "verify_webhook",
                new=AsyncMock(side_effect=PaymentGatewayError("webhook id missing")),
            ),
            pytest.raises(UpstreamFailureError),
        ):
            await checkout.handle_webhook({}, self._EVENT)

    @pytest.mark.asyncio
    async def test_event_without_order_is_acknowledged(self, checkout, store):
        """Verified events naming no order are accepted and ignored."""
        result = await checkout.handle_webhook({}, {"event_type": "BILLING.PLAN.CREATED"})

        assert result is None
        assert store.keys() == []

    @pytest.mark.asyncio
    async def test_malformed_event_is_acknowledged(self, checkout, store):
        """A verified event with wrongly typed nodes is ignored, not a 500."""
        event = {
            "event_type": "PAYMENT.CAPTURE.COMPLETED",
            "resource": {"id": "CAPTURE999999", "purchase_units": "ORDER12345ABC"},
        }

        assert await checkout.handle_webhook({}, event) is None
        assert store.keys() == []

    @pytest.mark.asyncio
    async def test_webhook_racing_capture_keeps_capture_fields(self, checkout, store):
        """A capture landing between the webhook's read and write is merged, not erased."""
        event = {
            "event_type": "CHECKOUT.ORDER.APPROVED",
            "resource": {"id": TEST_ORDER_ID, "status": "APPROVED"},
        }
        captured: list[str] = []

        async def capture_lands_first(key: str) -> None:
            if key == purchase_key(TEST_ORDER_ID) and not captured:
                captured.append("started")
                outcome = await checkout.capture_order(TEST_ORDER_ID)
                captured.append(outcome.token_id)

        store.race_window = capture_lands_first
        assert await checkout.handle_webhook({}, event) == TEST_ORDER_ID
        store.race_window = None

        token_id = captured[1]
        purchase = await PurchaseRepository.get(store, TEST_ORDER_ID)
        assert purchase.status == "COMPLETED"
        assert purchase.token == token_id
        assert purchase.amount == "9.00"
        assert purchase.csv_key == TEST_RESOURCE_KEY
        assert purchase.gateway_status == "APPROVED"
        assert purchase.last_event == "CHECKOUT.ORDER.APPROVED"
        assert purchase.webhook_seen is not None

        again = await checkout.capture_order(TEST_ORDER_ID)
        assert again.already_processed is True
        assert again.token_id == token_id

    @pytest.mark.asyncio
    async def test_capture_racing_webhook_keeps_breadcrumbs(self, checkout, store):
        """A webhook landing inside the capture's write keeps its breadcrumbs."""
        fired: list[str] = []

        async def webhook_lands_first(key: str) -> None:
            if key == purchase_key(TEST_ORDER_ID) and not fired:
                fired.append(key)
                await checkout.handle_webhook({}, self._EVENT)

        store.race_window = webhook_lands_first
        outcome = await checkout.capture_order(TEST_ORDER_ID)
        store.race_window = None

        assert fired
        purchase = await PurchaseRepository.get(store, TEST_ORDER_ID)
        assert purchase.status == "COMPLETED"
        assert purchase.token == outcome.token_id
        assert purchase.amount == "9.00"
        assert purchase.last_event == "PAYMENT.CAPTURE.COMPLETED"
        assert purchase.gateway_status == "COMPLETED"
        assert purchase.webhook_seen is not None
