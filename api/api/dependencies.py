"""FastAPI dependency injection for settings, database sessions, the payment
gateway and the webhook processor."""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from billing_engine.config import BillingEngineSettings, load_engine_settings
from billing_engine.gateway import PaymentGateway, StripeGateway
from billing_engine.ingress import EventAuthenticator
from billing_engine.locking import AccountLockRegistry
from billing_engine.processor import WebhookProcessor
from billing_engine.state.database import get_engine
from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.config import APISettings, load_api_settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None
_engine_settings_cache: BillingEngineSettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


def get_engine_settings() -> BillingEngineSettings:
    """Return the cached :class:`BillingEngineSettings` singleton."""
    global _engine_settings_cache  # noqa: PLW0603
    if _engine_settings_cache is None:
        _engine_settings_cache = load_engine_settings()
    return _engine_settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]
EngineSettingsDep = Annotated[BillingEngineSettings, Depends(get_engine_settings)]

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
    """Return the global async session factory.

    The webhook processor opens its own per-event session from this
    factory so that the per-account lock spans the whole transaction.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that commits on clean exit and rolls back on exception."""
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
SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]

# ---------------------------------------------------------------------------
# Payment gateway
# ---------------------------------------------------------------------------

_gateway: PaymentGateway | None = None


def init_gateway(settings: APISettings) -> PaymentGateway:
    """Create and cache the global :class:`StripeGateway`."""
    global _gateway  # noqa: PLW0603
    _gateway = StripeGateway(settings.stripe_secret_key.get_secret_value())
    return _gateway


def get_gateway() -> PaymentGateway:
    if _gateway is None:
        raise RuntimeError("Payment gateway has not been initialised.")
    return _gateway


GatewayDep = Annotated[PaymentGateway, Depends(get_gateway)]

# ---------------------------------------------------------------------------
# Per-account locks and webhook processor
# ---------------------------------------------------------------------------

# One registry per worker process; webhook and admin requests must share it.
_account_locks = AccountLockRegistry()


def get_account_locks() -> AccountLockRegistry:
    return _account_locks


LocksDep = Annotated[AccountLockRegistry, Depends(get_account_locks)]


def get_webhook_processor(
    settings: SettingsDep,
    engine_settings: EngineSettingsDep,
    session_factory: SessionFactoryDep,
    gateway: GatewayDep,
    locks: LocksDep,
) -> WebhookProcessor:
    """Build the processor for one webhook request from the shared collaborators."""
    authenticator = EventAuthenticator(
        settings.stripe_webhook_secret.get_secret_value(),
        tolerance=settings.stripe_signature_tolerance,
    )
    return WebhookProcessor(authenticator, session_factory, gateway, engine_settings, locks=locks)


ProcessorDep = Annotated[WebhookProcessor, Depends(get_webhook_processor)]

# ---------------------------------------------------------------------------
# Admin authentication
# ---------------------------------------------------------------------------


def require_admin(request: Request, settings: SettingsDep) -> None:
    """Check ``Authorization: Bearer <admin secret>`` in constant time.

    Raises
    ------
    HTTPException
        500 when no admin secret is configured, 401 when the header is
        missing, 403 when the token does not match.
    """
    expected = settings.admin_secret_key.get_secret_value()
    if not expected:
        logger.error("Admin endpoint called but API_ADMIN_SECRET_KEY is not configured")
        raise HTTPException(status_code=500, detail="Admin access is not configured")

    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    if not hmac.compare_digest(token.strip().encode("utf-8"), expected.encode("utf-8")):
        client = request.client.host if request.client else "unknown"
        logger.warning("Rejected admin request with invalid token from %s", client)
        raise HTTPException(status_code=403, detail="Invalid admin token")


AdminDep = Depends(require_admin)
