"""Abstract base class and types for payment gateways."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class CaptureResult:
    """Outcome of capturing an approved order.

    Attributes:
        ok: True when the gateway answered 2xx.
        http_status: Gateway HTTP status code.
        status: Order/capture status (e.g. "COMPLETED"); "UNKNOWN" if absent.
        amount: Captured amount as the gateway reported it (e.g. "9.00").
        currency: Captured currency code (e.g. "USD").
        capture_id: Gateway capture id.
        payer: Minimal payer info ({"payer_id", "email"}) or None.
        raw: Parsed response body, or the raw text if it was not JSON.
    """

    ok: bool
    http_status: int
    status: str = "UNKNOWN"
    amount: str | None = None
    currency: str | None = None
    capture_id: str | None = None
    payer: dict[str, Any] | None = None
    raw: Any = field(default=None, compare=False)


class PaymentGateway(ABC):
    """Payment gateway interface used by checkout.

    Implementations raise PaymentGatewayError for transport and credential
    failures. Non-2xx capture answers are returned as CaptureResult(ok=False)
    so the caller can persist a diagnostic snapshot.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return provider identifier (e.g., 'paypal')."""

    @abstractmethod
    async def create_order(
        self,
        *,
        amount: str,
        currency: str,
        description: str,
        brand_name: str,
    ) -> str:
        """Create an order for immediate capture and return its id."""

    @abstractmethod
    async def capture_order(self, order_id: str) -> CaptureResult:
        """Capture an approved order."""

    @abstractmethod
    async def verify_webhook(
        self,
        headers: dict[str, str],
        event: dict[str, Any],
    ) -> bool:
        """Verify a webhook event's transmission signature with the gateway.

        Args:
            headers: Request headers (lower-cased names).
            event: Parsed webhook body.

        Returns:
            True only if the gateway confirms the signature.
        """
