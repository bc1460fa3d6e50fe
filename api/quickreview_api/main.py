"""FastAPI application entry-point for the QuickReview API."""

from __future__ import annotations

import logging
import secrets
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import SecretStr
from sqlalchemy.exc import SQLAlchemyError

from quickreview_api import __version__
from quickreview_api.config import APISettings, PlatformEnv, load_api_settings, validate_startup_settings
from quickreview_api.dependencies import (
    dispose_counter_store,
    dispose_engine,
    dispose_payment_processor,
    dispose_rate_limiters,
    dispose_yelp_client,
    init_counter_store,
    init_engine,
    init_payment_processor,
    init_rate_limiters,
    init_yelp_client,
)
from quickreview_api.middleware.auth import AuthenticationMiddleware
from quickreview_api.middleware.logging import RequestLoggingMiddleware
from quickreview_api.middleware.rate_limit import RateLimitExceededError, rate_limit_exceeded_handler
from quickreview_api.routers import account, admin, billing, cron, health, landing, lookup, stores
from quickreview_api.security import TokenManager
from quickreview_api.services.errors import QuickReviewError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Refuse to start when required secrets are missing.
    - Initialise the async database engine and, in dev or local SQLite
      mode, create tables (production uses Alembic migrations).
    - Construct the Stripe client, counter store, rate limiters and Yelp
      client held by the dependency layer.

    On shutdown the clients and the engine pool are released.
    """
    settings: APISettings = load_api_settings()
    validate_startup_settings(settings)

    # Database engine.
    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local" if is_local else "postgres")

    # Auto-create tables in dev or local SQLite mode (idempotent).
    if settings.platform_env == PlatformEnv.DEV or is_local:
        from quickreview_core.state.sqlite_adapter import create_local_tables

        await create_local_tables(engine)
        logger.info("Database tables ensured (%s)", "local SQLite" if is_local else "dev auto-migration")

    init_payment_processor(settings)
    counter_store = init_counter_store(settings)
    init_rate_limiters(settings, counter_store)
    init_yelp_client(settings)
    logger.info("Stripe, counter store, rate limiters and Yelp client initialised")

    if settings.structured_logging:
        from quickreview_api.middleware.json_formatter import JSONFormatter

        root_logger = logging.getLogger()
        root_logger.handlers.clear()
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        root_logger.addHandler(handler)
        root_logger.setLevel(logging.INFO)
        logger.info("Structured JSON logging enabled")

    yield

    # Shutdown.
    await dispose_yelp_client()
    dispose_rate_limiters()
    await dispose_counter_store()
    dispose_payment_processor()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def _build_token_manager(settings: APISettings) -> TokenManager:
    secret = settings.auth_token_secret
    if not secret.get_secret_value():
        # Production refuses to start without a secret (see lifespan).
        logger.warning("API_AUTH_TOKEN_SECRET is not set; using a random per-process secret")
        secret = SecretStr(secrets.token_urlsafe(32))
    return TokenManager(secret, ttl_seconds=settings.auth_token_ttl_seconds)


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="QuickReview API",
        description="Subscriptions, entitlements and usage metering for QuickReview.",
        version=__version__,
        lifespan=lifespan,
    )

    token_manager = _build_token_manager(settings)
    app.state.token_manager = token_manager

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "X-Correlation-ID",
            "Accept",
        ],
    )
    app.add_middleware(AuthenticationMiddleware, token_manager=token_manager)
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(account.router, prefix="/api/v1")
    app.include_router(billing.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")
    app.include_router(stores.router, prefix="/api/v1")
    app.include_router(landing.router, prefix="/api/v1")
    app.include_router(lookup.router, prefix="/api/v1")
    app.include_router(cron.router, prefix="/api/v1")

    # -- Exception handlers --------------------------------------------------

    app.add_exception_handler(RateLimitExceededError, rate_limit_exceeded_handler)  # type: ignore[arg-type]

    @app.exception_handler(QuickReviewError)
    async def quickreview_error_handler(request: Request, exc: QuickReviewError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
        else:
            logger.info("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_content())

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        # Log the full error; return a safe message to the client.
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(PermissionError)
    async def permission_error_handler(request: Request, exc: PermissionError) -> JSONResponse:
        logger.warning("PermissionError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=403, content={"detail": "Permission denied"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal database error"},
        )

    return app


# Module-level application instance used by ``uvicorn quickreview_api.main:app``.
app = create_app()
