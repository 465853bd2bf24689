"""FastAPI application entry-point for the billing sync service."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from billing_engine.errors import AuthenticationError, TransientExternalError
from billing_engine.state.sqlite_adapter import create_local_tables
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from api import __version__
from api.config import APISettings, PlatformEnv, load_api_settings
from api.dependencies import dispose_engine, init_engine, init_gateway
from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.prometheus import PrometheusMiddleware
from api.middleware.rate_limit import RateLimitConfig, RateLimitMiddleware
from api.routers import admin, health, webhooks
from api.routers import metrics as metrics_router

logger = logging.getLogger(__name__)


def configure_logging(settings: APISettings) -> None:
    """Install the JSON formatter on the root logger when structured logging is on."""
    if not settings.structured_logging:
        return
    from api.middleware.json_formatter import JSONFormatter

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)
    logger.info("Structured JSON logging enabled")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Refuse to start in staging/production without a webhook secret.
    - Initialise the async database engine; create tables in dev or
      local SQLite mode (idempotent).
    - Initialise the payment gateway.

    On shutdown:
    - Dispose the database engine connection pool.
    """
    settings: APISettings = load_api_settings()
    configure_logging(settings)

    if settings.platform_env in (PlatformEnv.STAGING, PlatformEnv.PRODUCTION) and not (
        settings.stripe_webhook_secret.get_secret_value()
    ):
        raise RuntimeError(
            f"API_STRIPE_WEBHOOK_SECRET is required in {settings.platform_env.value} mode. Refusing to start."
        )

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local" if is_local else "postgres")
    if settings.platform_env == PlatformEnv.DEV or is_local:
        await create_local_tables(engine)

    init_gateway(settings)
    logger.info("Payment gateway initialised")

    yield

    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="Billing Sync API",
        description="Keeps local subscription and entitlement state in sync with the payment provider.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        RateLimitMiddleware,
        config=RateLimitConfig(
            enabled=settings.admin_rate_limit_enabled,
            requests=settings.admin_rate_limit_requests,
            window_seconds=settings.admin_rate_limit_window_seconds,
            trust_forwarded_for=settings.trust_forwarded_for,
        ),
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(webhooks.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    # Outside /api/v1 versioning (Prometheus scrape, probes).
    app.include_router(metrics_router.router)
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(AuthenticationError)
    async def authentication_error_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
        logger.warning("Rejected webhook on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(TransientExternalError)
    async def provider_error_handler(request: Request, exc: TransientExternalError) -> JSONResponse:
        logger.error("Payment provider error on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=502, content={"detail": "Payment provider unavailable"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app


# Module-level application instance used by ``uvicorn api.main:app``.
app = create_app()
