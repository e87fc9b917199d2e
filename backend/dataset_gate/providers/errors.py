"""Provider error taxonomy.

Error classes for the object store and payment gateway adapters.

WHY SEPARATE ERROR CLASSES:
- Callers decide per operation which failures are retryable
- Adapters map vendor exceptions (botocore, httpx) onto these
- Services translate them into API errors at their boundary
"""


__all__ = [
    "ProviderError",
    "StoreError",
    "ObjectNotFoundError",
    "AccessDeniedError",
    "PreconditionFailedError",
    "StoreUnavailableError",
    "PaymentGatewayError",
]


class ProviderError(Exception):
    """Base class for all provider errors."""

    pass


class StoreError(ProviderError):
    """Base class for object store failures.

    Attributes:
        key: Object key involved, when known.
    """

    def __init__(self, message: str, key: str | None = None):
        super().__init__(message)
        self.key = key


class ObjectNotFoundError(StoreError):
    """Object does not exist (or was already cleaned up)."""

    pass


class AccessDeniedError(StoreError):
    """Credentials lack permission for the operation.

    WHY NOT RETRYABLE:
    - Requires operator intervention (IAM policy, keys)
    """

    pass


class PreconditionFailedError(StoreError):
    """Conditional write lost: the object's version tag changed.

    Another writer won the race; the caller must re-read and retry.
    """

    pass


class StoreUnavailableError(StoreError):
    """Network failure, timeout, or server-side error.

    A timed-out write may or may not have been applied, so callers that
    retry must start again from a fresh read.
    """

    pass


class PaymentGatewayError(ProviderError):
    """Payment gateway unreachable, misconfigured, or rejected our credentials."""

    pass
