"""Shared fixtures for QuickReview API tests.

Provides an in-memory SQLite database, a mocked Stripe client whose
webhook verification is real, an in-memory counter store, and an async
httpx client bound to the FastAPI app.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import time
from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set the token secret BEFORE importing application modules so the
# AuthenticationMiddleware validates with a deterministic secret instead
# of generating a random one.
_TEST_TOKEN_SECRET = "test-secret-key-for-quickreview-tests"
os.environ.setdefault("API_AUTH_TOKEN_SECRET", _TEST_TOKEN_SECRET)

from pydantic import SecretStr
from quickreview_core.metering.counter_store import InMemoryCounterStore
from quickreview_core.state.repository import AccountRepository
from quickreview_core.state.sqlite_adapter import create_local_tables, get_local_engine
from quickreview_core.state.tables import UserTable
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quickreview_api.config import APISettings
from quickreview_api.dependencies import (
    build_rate_limiters,
    get_counter_store,
    get_db_session,
    get_payment_processor,
    get_rate_limiters,
    get_settings,
    get_yelp_client,
)
from quickreview_api.main import create_app
from quickreview_api.security import TokenManager
from quickreview_api.services.business_lookup import YelpClient
from quickreview_api.services.payment_processor import PaymentProcessorClient

WEBHOOK_SECRET = "whsec_test_quickreview"
CRON_SECRET = "cron-secret-for-tests"
IDENTITY_SECRET = "identity-secret-for-tests"
OPERATOR_EMAIL = "ops@quickreview.test"
PUBLIC_BASE_URL = "https://app.quickreview.test"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _stripe_signature(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a ``stripe-signature`` header the way Stripe signs deliveries."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={signed}"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    """Return a settings object suitable for testing."""
    return APISettings(
        database_url="sqlite+aiosqlite://",
        platform_env="dev",
        public_base_url=PUBLIC_BASE_URL,
        cors_origins=["http://localhost:3000"],
        auth_token_secret=_TEST_TOKEN_SECRET,
        identity_secret=IDENTITY_SECRET,
        admin_emails=[OPERATOR_EMAIL],
        cron_secret=CRON_SECRET,
        stripe_secret_key="sk_test_xxx",
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_price_id_pro="price_pro",
        yelp_api_key="",
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Yield a session factory over a fresh in-memory SQLite database.

    The in-memory engine keeps one connection, so every session sees the
    same database.
    """
    engine = get_local_engine(":memory:")
    await create_local_tables(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture()
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """Session for service-level tests and for seeding API tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture()
def make_user(session_factory: async_sessionmaker[AsyncSession]):
    """Return a coroutine that commits a new account and returns it."""

    async def _make(email: str = "owner@example.com", *, created_at: datetime | None = None) -> UserTable:
        async with session_factory() as session:
            user = await AccountRepository(session).create(email, now=created_at or datetime.now(UTC))
            await session.commit()
            return user

    return _make


# ---------------------------------------------------------------------------
# External clients
# ---------------------------------------------------------------------------


@pytest.fixture()
def processor(test_settings: APISettings) -> AsyncMock:
    """Mock Stripe client.  Webhook signature checks use the real client."""
    real = PaymentProcessorClient(test_settings.stripe_secret_key, test_settings.stripe_webhook_secret)
    mock = AsyncMock(spec=PaymentProcessorClient)
    mock.construct_event = MagicMock(side_effect=real.construct_event)
    mock.create_checkout_session = AsyncMock(return_value="https://checkout.stripe.test/session")
    mock.create_portal_session = AsyncMock(return_value="https://billing.stripe.test/portal")
    mock.latest_invoice_payment = AsyncMock(return_value={"payment_intent": "pi_123"})
    return mock


@pytest.fixture()
def counter_store() -> InMemoryCounterStore:
    return InMemoryCounterStore()


@pytest.fixture()
def yelp_client() -> MagicMock:
    client = MagicMock(spec=YelpClient)
    client.enabled = False
    client.search_business_id = AsyncMock(return_value=None)
    client.close = AsyncMock()
    return client


# ---------------------------------------------------------------------------
# FastAPI app and client
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(
    test_settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
    processor: AsyncMock,
    counter_store: InMemoryCounterStore,
    yelp_client: MagicMock,
):
    """Create a FastAPI app with dependency overrides for testing."""
    application = create_app()
    limiters = build_rate_limiters(test_settings, counter_store)

    async def _override_session() -> AsyncGenerator[AsyncSession, None]:
        session = session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_payment_processor] = lambda: processor
    application.dependency_overrides[get_counter_store] = lambda: counter_store
    application.dependency_overrides[get_rate_limiters] = lambda: limiters
    application.dependency_overrides[get_yelp_client] = lambda: yelp_client
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Yield an async httpx client bound to the test app.

    Uses ASGITransport so requests go directly to the ASGI app without
    opening a real TCP socket.  No auth header is set; tests pass
    :func:`auth_headers` per request.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def auth_headers():
    """Return a callable issuing ``Authorization`` headers for a user."""
    manager = TokenManager(SecretStr(_TEST_TOKEN_SECRET))

    def _headers(user: UserTable) -> dict[str, str]:
        return {"Authorization": f"Bearer {manager.generate_token(user.id, user.email)}"}

    return _headers


@pytest.fixture()
def post_webhook(client: AsyncClient):
    """Return a coroutine delivering a signed Stripe event to the app."""

    async def _post(event: dict[str, Any], *, secret: str = WEBHOOK_SECRET, signature: str | None = None):
        payload = json.dumps(event)
        header = _stripe_signature(payload, secret) if signature is None else signature
        return await client.post(
            "/api/v1/billing/webhooks",
            content=payload,
            headers={"stripe-signature": header, "content-type": "application/json"},
        )

    return _post
