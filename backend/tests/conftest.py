"""Shared fixtures: in-memory object store, mock gateway, pinned clock, API client."""

from collections.abc import AsyncGenerator, Iterator
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr

from dataset_gate.core.config import settings
from dataset_gate.core.rate_limiting import limiter
from dataset_gate.providers import factory
from dataset_gate.providers.payments.mock_adapter import MockPaymentGateway
from dataset_gate.providers.storage.memory_adapter import InMemoryBlobStore
from dataset_gate.services.optimistic_update import RetryPolicy
from dataset_gate.services.redemption_service import RedemptionService
from dataset_gate.services.resource_resolver import ResourceResolver
from dataset_gate.services.token_issuer import TokenIssuer

# Fixed "now" for deterministic expiry arithmetic
TEST_NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=UTC)

TEST_RESOURCE_KEY = "exports/brands-2026-01.csv"
TEST_ORDER_ID = "ORDER12345ABC"

# Security: This is a test-only secret. Production uses a real secret from env.
TEST_ADMIN_SECRET = "test-admin-secret-that-is-at-least-32-chars"  # nosec B105

# No sleeping between conditional-write attempts in tests
FAST_RETRY = RetryPolicy(max_attempts=5, backoff_min_ms=0, backoff_max_ms=0)


class FakeClock:
    """Callable clock pinned to a settable instant."""

    def __init__(self, now: datetime = TEST_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        """Move the clock forward (timedelta keyword arguments)."""
        self.now = self.now + timedelta(**kwargs)


def make_redemption_service(
    store: InMemoryBlobStore,
    clock: FakeClock,
    **overrides,
) -> RedemptionService:
    """Build a RedemptionService with test-friendly defaults."""
    params = {
        "resolver": ResourceResolver(
            store,
            default_key="exports/brands-latest.csv",
            manifest_key="exports/manifest.json",
        ),
        "retry_policy": FAST_RETRY,
        "grace_period_seconds": 5.0,
        "download_ttl_seconds": 900,
        "download_filename": "vanished-brands.csv",
        "download_content_type": "text/csv; charset=utf-8",
        "limit_retry_after_seconds": 86_400,
        "clock": clock,
    }
    params.update(overrides)
    return RedemptionService(store, **params)


# =============================================================================
# Provider fixtures
# =============================================================================


@pytest.fixture
def store() -> InMemoryBlobStore:
    """Empty in-memory object store."""
    return InMemoryBlobStore()


@pytest.fixture
def gateway() -> MockPaymentGateway:
    """Mock gateway that completes captures at the configured price."""
    return MockPaymentGateway(
        default_amount=settings.price_usd,
        default_currency=settings.paypal_currency,
    )


@pytest.fixture
def clock() -> FakeClock:
    """Clock pinned to TEST_NOW."""
    return FakeClock()


@pytest.fixture
def issuer(store: InMemoryBlobStore, clock: FakeClock) -> TokenIssuer:
    """Token issuer writing to the in-memory store."""
    return TokenIssuer(store, clock=clock)


@pytest.fixture
def redemption(store: InMemoryBlobStore, clock: FakeClock) -> RedemptionService:
    """Redemption service over the in-memory store and pinned clock."""
    return make_redemption_service(store, clock)


@pytest.fixture
def admin_secret() -> Iterator[str]:
    """Configure the admin shared secret for the duration of a test."""
    original = settings.admin_remint_secret
    settings.admin_remint_secret = SecretStr(TEST_ADMIN_SECRET)
    yield TEST_ADMIN_SECRET
    settings.admin_remint_secret = original


# =============================================================================
# API client
# =============================================================================


@pytest_asyncio.fixture
async def client(
    store: InMemoryBlobStore,
    gateway: MockPaymentGateway,
    clock: FakeClock,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client with store, gateway, and clock overridden.

    The advisory rate limiter is disabled; rate limiting has its own tests.
    """
    from dataset_gate.api.deps import get_clock, get_gateway, get_store
    from dataset_gate.main import app

    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_clock] = lambda: clock
    limiter.enabled = False

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    limiter.enabled = settings.rate_limit_enabled
    app.dependency_overrides.clear()
    factory.reset_providers()
