"""FastAPI dependency injection for sessions, clients, limiters, and callers."""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from quickreview_core.entitlements.lifecycle import AccountState, resolve_account_state
from quickreview_core.metering.counter_store import CounterStore, InMemoryCounterStore, RedisCounterStore
from quickreview_core.metering.rate_limiter import FailurePolicy, FixedWindowRateLimiter
from quickreview_core.state.database import get_engine
from quickreview_core.state.repository import AccountRepository
from quickreview_core.state.tables import UserTable
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from quickreview_api.config import APISettings, PlatformEnv, load_api_settings
from quickreview_api.security import TokenManager
from quickreview_api.services.business_lookup import YelpClient
from quickreview_api.services.errors import AuthorizationError, ConfigurationError
from quickreview_api.services.payment_processor import PaymentProcessorClient

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory."""
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` scoped to the request.

    The session commits on clean exit and rolls back on exception, so a
    failed entitlement write surfaces as an error instead of a success.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Payment processor
# ---------------------------------------------------------------------------

_processor: PaymentProcessorClient | None = None


def init_payment_processor(settings: APISettings) -> PaymentProcessorClient:
    """Create and cache the global :class:`PaymentProcessorClient`."""
    global _processor  # noqa: PLW0603
    _processor = PaymentProcessorClient(
        settings.stripe_secret_key,
        settings.stripe_webhook_secret,
        api_version=settings.stripe_api_version or None,
        webhook_tolerance=settings.stripe_webhook_tolerance_seconds,
    )
    return _processor


def dispose_payment_processor() -> None:
    global _processor  # noqa: PLW0603
    _processor = None


def get_payment_processor() -> PaymentProcessorClient:
    """Return the cached :class:`PaymentProcessorClient` singleton."""
    if _processor is None:
        raise RuntimeError(
            "Payment processor has not been initialised. "
            "Ensure init_payment_processor() is called during application startup."
        )
    return _processor


ProcessorDep = Annotated[PaymentProcessorClient, Depends(get_payment_processor)]

# ---------------------------------------------------------------------------
# Counter store
# ---------------------------------------------------------------------------

_counter_store: CounterStore | None = None


def init_counter_store(settings: APISettings) -> CounterStore:
    """Create and cache the shared counter store.

    Uses Redis when ``API_REDIS_URL`` is set.  Otherwise falls back to a
    per-process in-memory store, which production startup refuses.
    """
    global _counter_store  # noqa: PLW0603
    if settings.redis_url:
        _counter_store = RedisCounterStore.from_url(
            settings.redis_url,
            socket_timeout=settings.redis_socket_timeout,
        )
        logger.info("Counter store: redis")
    else:
        _counter_store = InMemoryCounterStore()
        logger.warning("Counter store: in-memory (API_REDIS_URL not set); limits are per process")
    return _counter_store


async def dispose_counter_store() -> None:
    """Close the counter store connection pool."""
    global _counter_store  # noqa: PLW0603
    if _counter_store is not None:
        await _counter_store.close()
        _counter_store = None


def get_counter_store() -> CounterStore:
    """Return the cached counter store."""
    if _counter_store is None:
        raise RuntimeError(
            "Counter store has not been initialised. Ensure init_counter_store() is called during application startup."
        )
    return _counter_store


CounterStoreDep = Annotated[CounterStore, Depends(get_counter_store)]

# ---------------------------------------------------------------------------
# Rate limiters
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RateLimiters:
    """The limiters guarding sign-in, public lookups, and the Yelp budget."""

    signin: FixedWindowRateLimiter
    lookup: FixedWindowRateLimiter
    yelp_budget: FixedWindowRateLimiter


def build_rate_limiters(settings: APISettings, store: CounterStore) -> RateLimiters:
    """Construct the limiters from *settings* on top of *store*."""
    return RateLimiters(
        signin=FixedWindowRateLimiter(
            store,
            namespace="auth_ratelimit",
            max_attempts=settings.signin_rate_limit_attempts,
            window_seconds=settings.signin_rate_limit_window_seconds,
            policy=FailurePolicy.FAIL_CLOSED,
        ),
        lookup=FixedWindowRateLimiter(
            store,
            namespace="lookup_ratelimit",
            max_attempts=settings.lookup_rate_limit_requests,
            window_seconds=settings.lookup_rate_limit_window_seconds,
            policy=FailurePolicy.FAIL_OPEN,
        ),
        yelp_budget=FixedWindowRateLimiter(
            store,
            namespace="yelp_budget",
            max_attempts=settings.yelp_daily_budget,
            window_seconds=settings.yelp_budget_window_seconds,
            policy=FailurePolicy.FAIL_OPEN,
            budget_cap=True,
        ),
    )


_rate_limiters: RateLimiters | None = None


def init_rate_limiters(settings: APISettings, store: CounterStore) -> RateLimiters:
    global _rate_limiters  # noqa: PLW0603
    _rate_limiters = build_rate_limiters(settings, store)
    return _rate_limiters


def dispose_rate_limiters() -> None:
    global _rate_limiters  # noqa: PLW0603
    _rate_limiters = None


def get_rate_limiters() -> RateLimiters:
    """Return the cached :class:`RateLimiters`."""
    if _rate_limiters is None:
        raise RuntimeError(
            "Rate limiters have not been initialised. Ensure init_rate_limiters() is called during application startup."
        )
    return _rate_limiters


LimitersDep = Annotated[RateLimiters, Depends(get_rate_limiters)]

# ---------------------------------------------------------------------------
# Yelp client
# ---------------------------------------------------------------------------

_yelp_client: YelpClient | None = None


def init_yelp_client(settings: APISettings) -> YelpClient:
    """Create and cache the global :class:`YelpClient`."""
    global _yelp_client  # noqa: PLW0603
    _yelp_client = YelpClient(
        settings.yelp_api_key.get_secret_value(),
        base_url=settings.yelp_api_url,
        timeout=settings.yelp_timeout,
    )
    return _yelp_client


async def dispose_yelp_client() -> None:
    """Close the Yelp client's underlying HTTP pool."""
    global _yelp_client  # noqa: PLW0603
    if _yelp_client is not None:
        await _yelp_client.close()
        _yelp_client = None


def get_yelp_client() -> YelpClient:
    """Return the cached :class:`YelpClient` singleton."""
    if _yelp_client is None:
        raise RuntimeError(
            "Yelp client has not been initialised. Ensure init_yelp_client() is called during application startup."
        )
    return _yelp_client


YelpClientDep = Annotated[YelpClient, Depends(get_yelp_client)]

# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


def get_token_manager(request: Request) -> TokenManager:
    """Return the :class:`TokenManager` built by ``create_app()``."""
    return request.app.state.token_manager


TokenManagerDep = Annotated[TokenManager, Depends(get_token_manager)]

# ---------------------------------------------------------------------------
# Caller identity (populated by AuthenticationMiddleware)
# ---------------------------------------------------------------------------


def get_user_id(request: Request) -> str:
    """Extract the authenticated user id from request state."""
    user_id = getattr(request.state, "sub", None)
    if user_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user_id


UserIdDep = Annotated[str, Depends(get_user_id)]


async def get_current_user(user_id: UserIdDep, session: SessionDep, settings: SettingsDep) -> UserTable:
    """Load the caller's account.

    Accounts pending deletion are treated as signed out: the client must
    sign in again, which recovers the account.
    """
    user = await AccountRepository(session).get(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    state = resolve_account_state(
        user.account_state,
        user.deleted_at,
        datetime.now(UTC),
        timedelta(days=settings.account_retention_days),
    )
    if state != AccountState.ACTIVE:
        raise HTTPException(status_code=401, detail="Account is scheduled for deletion. Sign in again to recover it.")
    return user


CurrentUserDep = Annotated[UserTable, Depends(get_current_user)]


def require_operator(request: Request, settings: SettingsDep) -> str:
    """Allow only callers whose e-mail is on the operator allow-list."""
    email = (getattr(request.state, "email", None) or "").strip().lower()
    if not email or email not in settings.admin_emails:
        logger.warning("Operator endpoint %s refused for %s", request.url.path, email or "anonymous")
        raise AuthorizationError("Operator access required")
    return email


OperatorDep = Annotated[str, Depends(require_operator)]

# ---------------------------------------------------------------------------
# Shared secrets
# ---------------------------------------------------------------------------


def _bearer(request: Request) -> str:
    parts = request.headers.get("authorization", "").split(None, 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return ""
    return parts[1].strip()


def require_cron_secret(request: Request, settings: SettingsDep) -> None:
    """Verify ``Authorization: Bearer <cron secret>`` on maintenance endpoints.

    Outside production an unset secret leaves the endpoints open, with a
    warning.  Production refuses to start without one.
    """
    expected = settings.cron_secret.get_secret_value()
    if not expected:
        if settings.platform_env == PlatformEnv.PRODUCTION:
            raise ConfigurationError("Cron secret not configured")
        logger.warning("API_CRON_SECRET is not set; allowing %s without a secret", request.url.path)
        return
    if not hmac.compare_digest(_bearer(request).encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Unauthorized")


CronAuthDep = Annotated[None, Depends(require_cron_secret)]


def require_identity_secret(request: Request, settings: SettingsDep) -> None:
    """Verify the ``X-Identity-Secret`` header sent by the web front-end.

    Sign-in trusts the e-mail asserted by the front-end after its identity
    provider callback, so the header proves the call came from it.
    """
    expected = settings.identity_secret.get_secret_value()
    if not expected:
        if settings.platform_env == PlatformEnv.PRODUCTION:
            raise ConfigurationError("Identity secret not configured")
        return
    provided = request.headers.get("x-identity-secret", "")
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Invalid identity secret")


IdentityDep = Annotated[None, Depends(require_identity_secret)]
