"""Provider factory functions.

Singleton pattern for the object store and payment gateway.
"""

from dataset_gate.core.config import Settings, settings
from dataset_gate.core.errors import ServiceNotConfiguredError
from dataset_gate.providers.payments.base import PaymentGateway
from dataset_gate.providers.payments.mock_adapter import MockPaymentGateway
from dataset_gate.providers.payments.paypal_adapter import PayPalGateway
from dataset_gate.providers.storage.base import BlobStore
from dataset_gate.providers.storage.memory_adapter import InMemoryBlobStore
from dataset_gate.providers.storage.s3_adapter import S3BlobStore

_blob_store: BlobStore | None = None
_payment_gateway: PaymentGateway | None = None


def get_blob_store(config: Settings | None = None) -> BlobStore:
    """Get or create the object store singleton.

    WHY SINGLETON:
    - Reuses the boto3 client and its connection pool
    - The in-memory backend must be shared across requests

    Args:
        config: Optional settings. Defaults to the module-level settings.

    Returns:
        BlobStore instance.

    Raises:
        ServiceNotConfiguredError: If the S3 backend has no bucket.
    """
    global _blob_store

    if _blob_store is None:
        config = config or settings
        if config.store_backend == "memory":
            _blob_store = InMemoryBlobStore()
        else:
            if not config.s3_bucket_name:
                raise ServiceNotConfiguredError("Server not configured (S3_BUCKET_NAME missing).")
            _blob_store = S3BlobStore(
                config.s3_bucket_name,
                region=config.s3_region,
                endpoint_url=config.s3_endpoint or None,
                force_path_style=config.s3_force_path_style,
                access_key_id=config.s3_access_key_id or None,
                secret_access_key=config.s3_secret_access_key.get_secret_value() or None,
                timeout_seconds=config.store_timeout_seconds,
                max_attempts=config.store_max_attempts,
                server_side_encryption=config.s3_server_side_encryption,
            )

    return _blob_store


def get_payment_gateway(config: Settings | None = None) -> PaymentGateway:
    """Get or create the payment gateway singleton.

    Args:
        config: Optional settings. Defaults to the module-level settings.

    Returns:
        PaymentGateway instance.
    """
    global _payment_gateway

    if _payment_gateway is None:
        config = config or settings
        if config.payment_provider == "mock":
            _payment_gateway = MockPaymentGateway(
                default_amount=config.price_usd,
                default_currency=config.paypal_currency,
            )
        else:
            _payment_gateway = PayPalGateway(
                client_id=config.paypal_client_id,
                client_secret=config.paypal_client_secret.get_secret_value(),
                base_url=config.paypal_base_url,
                webhook_id=config.paypal_webhook_id,
                timeout_seconds=config.payment_timeout_seconds,
            )

    return _payment_gateway


def reset_providers() -> None:
    """Reset provider singletons.

    Used in tests to ensure isolation between test cases.
    """
    global _blob_store, _payment_gateway
    _blob_store = None
    _payment_gateway = None
