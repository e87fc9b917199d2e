"""Provider abstraction layer.

Exports:
    Error classes for provider error handling
    Factory functions for provider instances
"""

from dataset_gate.providers.errors import (
    AccessDeniedError,
    ObjectNotFoundError,
    PaymentGatewayError,
    PreconditionFailedError,
    ProviderError,
    StoreError,
    StoreUnavailableError,
)
from dataset_gate.providers.factory import (
    get_blob_store,
    get_payment_gateway,
    reset_providers,
)

__all__ = [
    # Errors
    "ProviderError",
    "StoreError",
    "ObjectNotFoundError",
    "AccessDeniedError",
    "PreconditionFailedError",
    "StoreUnavailableError",
    "PaymentGatewayError",
    # Factory
    "get_blob_store",
    "get_payment_gateway",
    "reset_providers",
]
