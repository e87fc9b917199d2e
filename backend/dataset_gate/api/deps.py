"""Shared dependencies for API endpoints.

WHY DEPENDENCY INJECTION:
- Endpoints never construct providers themselves
- Tests swap the object store, gateway, and clock via dependency_overrides
- Admin authorization is declared once and reused
"""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Annotated

from fastapi import Depends, Header

from dataset_gate.core.auth import ADMIN_SECRET_HEADER, verify_admin_secret
from dataset_gate.core.config import settings
from dataset_gate.core.errors import ForbiddenError, ServiceNotConfiguredError
from dataset_gate.providers.factory import get_blob_store, get_payment_gateway
from dataset_gate.providers.payments.base import PaymentGateway
from dataset_gate.providers.storage.base import BlobStore
from dataset_gate.services.checkout_service import CheckoutService
from dataset_gate.services.redemption_service import RedemptionService
from dataset_gate.services.reissue_service import ReissueService

Clock = Callable[[], datetime]


def get_store() -> BlobStore:
    """Object store for the request."""
    return get_blob_store()


def get_gateway() -> PaymentGateway:
    """Payment gateway for the request."""
    return get_payment_gateway()


def _utcnow() -> datetime:
    return datetime.now(UTC)


def get_clock() -> Clock:
    """Wall clock (overridden in tests to pin 'now')."""
    return _utcnow


Store = Annotated[BlobStore, Depends(get_store)]
Gateway = Annotated[PaymentGateway, Depends(get_gateway)]
CurrentClock = Annotated[Clock, Depends(get_clock)]


def get_redemption_service(store: Store, clock: CurrentClock) -> RedemptionService:
    return RedemptionService.from_settings(store, clock=clock)


def get_reissue_service(store: Store, clock: CurrentClock) -> ReissueService:
    return ReissueService.from_settings(store, clock=clock)


def get_checkout_service(store: Store, gateway: Gateway) -> CheckoutService:
    return CheckoutService.from_settings(store, gateway)


async def require_admin(
    x_admin_secret: Annotated[str | None, Header(alias=ADMIN_SECRET_HEADER)] = None,
) -> None:
    """Require the admin shared secret.

    Raises:
        ServiceNotConfiguredError: ADMIN_REMINT_SECRET is not set (500).
        ForbiddenError: Header missing or wrong (403).
    """
    expected = settings.admin_remint_secret.get_secret_value()
    if not expected:
        raise ServiceNotConfiguredError(
            "Server not configured (ADMIN_REMINT_SECRET missing)."
        )
    if not verify_admin_secret(x_admin_secret, expected):
        raise ForbiddenError("Forbidden")


Redemption = Annotated[RedemptionService, Depends(get_redemption_service)]
Reissue = Annotated[ReissueService, Depends(get_reissue_service)]
Checkout = Annotated[CheckoutService, Depends(get_checkout_service)]
AdminAuthorized = Annotated[None, Depends(require_admin)]
