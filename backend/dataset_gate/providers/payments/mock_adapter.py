"""Mock payment gateway for testing and local development.

WHY MOCK:
- Tests shouldn't hit the real gateway (cost, speed, flakiness)
- Deterministic capture outcomes, including failure modes
"""

import uuid
from typing import Any

from dataset_gate.providers.payments.base import CaptureResult, PaymentGateway


class MockPaymentGateway(PaymentGateway):
    """Gateway that completes every capture unless told otherwise.

    Attributes:
        capture_results: Pre-configured results keyed by order id.
        default_amount: Amount reported by default captures.
        default_currency: Currency reported by default captures.
        webhook_valid: Result returned by verify_webhook.
        calls: Record of all method invocations for test assertions.
    """

    def __init__(
        self,
        *,
        default_amount: str = "9.00",
        default_currency: str = "USD",
        webhook_valid: bool = True,
    ) -> None:
        self.capture_results: dict[str, CaptureResult] = {}
        self.default_amount = default_amount
        self.default_currency = default_currency
        self.webhook_valid = webhook_valid
        self.calls: list[dict[str, Any]] = []

    @property
    def provider_name(self) -> str:
        """Return 'mock' for testing."""
        return "mock"

    def set_capture_result(self, order_id: str, result: CaptureResult) -> None:
        """Configure the capture outcome for one order."""
        self.capture_results[order_id] = result

    async def create_order(
        self,
        *,
        amount: str,
        currency: str,
        description: str,
        brand_name: str,
    ) -> str:
        """Return a fresh order id."""
        self.calls.append(
            {
                "method": "create_order",
                "amount": amount,
                "currency": currency,
                "description": description,
                "brand_name": brand_name,
            }
        )
        return f"MOCK{uuid.uuid4().hex[:13].upper()}"

    async def capture_order(self, order_id: str) -> CaptureResult:
        """Return the configured result, or a COMPLETED capture."""
        self.calls.append({"method": "capture_order", "order_id": order_id})
        if order_id in self.capture_results:
            return self.capture_results[order_id]
        return CaptureResult(
            ok=True,
            http_status=201,
            status="COMPLETED",
            amount=self.default_amount,
            currency=self.default_currency,
            capture_id=f"CAP-{order_id}",
            payer={"payer_id": "MOCKPAYER", "email": "buyer@example.com"},
            raw={"id": order_id, "intent": "CAPTURE", "status": "COMPLETED"},
        )

    async def verify_webhook(
        self,
        headers: dict[str, str],
        event: dict[str, Any],
    ) -> bool:
        """Return the configured verification result."""
        self.calls.append({"method": "verify_webhook", "event": event})
        return self.webhook_valid
