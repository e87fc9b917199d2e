"""Payment gateway module.

PaymentGateway interface plus the PayPal and mock adapters.
"""

from dataset_gate.providers.payments.base import CaptureResult, PaymentGateway
from dataset_gate.providers.payments.mock_adapter import MockPaymentGateway
from dataset_gate.providers.payments.paypal_adapter import PayPalGateway

__all__ = [
    "CaptureResult",
    "PaymentGateway",
    "MockPaymentGateway",
    "PayPalGateway",
]
