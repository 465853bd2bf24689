"""Shared fixtures for billing API tests.

Provides a file-backed SQLite database, a fake payment gateway, a FastAPI
app with dependency overrides, an async httpx client, and factories for
signed webhook deliveries.
"""

from __future__ import annotations

import hashlib
import hmac
import itertools
import json
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from billing_engine.config import BillingEngineSettings
from billing_engine.errors import TransientExternalError
from billing_engine.locking import AccountLockRegistry
from billing_engine.models.events import SubscriptionObject
from billing_engine.state import ProfileRepository
from billing_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.config import APISettings
from api.dependencies import (
    get_account_locks,
    get_db_session,
    get_engine_settings,
    get_gateway,
    get_session_factory,
    get_settings,
)
from api.main import create_app

WEBHOOK_SECRET = "whsec_api_tests"
ADMIN_SECRET = "admin-test-secret"

# 2024-06-01T00:00:00Z
PERIOD_START = 1717200000
PERIOD_END = PERIOD_START + 30 * 24 * 3600


# ---------------------------------------------------------------------------
# Fake payment gateway
# ---------------------------------------------------------------------------


class FakeGateway:
    """In-memory payment gateway; schedules are accepted and recorded."""

    def __init__(self) -> None:
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.retrieve_calls: list[str] = []
        self.created_schedules: list[str] = []
        self.fail_retrieve = False
        self._ids = itertools.count(1)

    def add_subscription(self, payload: dict[str, Any]) -> None:
        self.subscriptions[payload["id"]] = payload

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionObject:
        self.retrieve_calls.append(subscription_id)
        if self.fail_retrieve or subscription_id not in self.subscriptions:
            raise TransientExternalError("retrieve_subscription", "provider unavailable")
        return SubscriptionObject.model_validate(self.subscriptions[subscription_id])

    async def create_schedule_from_subscription(self, subscription_id: str) -> str:
        schedule_id = f"sub_sched_{next(self._ids)}"
        self.created_schedules.append(schedule_id)
        return schedule_id

    async def update_schedule(self, schedule_id: str, phases: list[dict[str, Any]]) -> None:
        return None


# ---------------------------------------------------------------------------
# Payload factories
# ---------------------------------------------------------------------------


def _subscription_payload(
    sub_id: str = "sub_123",
    *,
    status: str = "active",
    price: str = "price_standard",
    user_id: str = "acct-1",
    cancel_at_period_end: bool = False,
) -> dict[str, Any]:
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": "cus_123",
        "status": status,
        "start_date": PERIOD_START,
        "current_period_start": PERIOD_START,
        "current_period_end": PERIOD_END,
        "cancel_at_period_end": cancel_at_period_end,
        "metadata": {"user_id": user_id},
        "items": {"data": [{"price": {"id": price}, "quantity": 1}]},
    }


def _event_payload(
    event_type: str,
    obj: dict[str, Any],
    *,
    event_id: str = "evt_1",
    created: int = PERIOD_START + 60,
) -> dict[str, Any]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "data": {"object": obj},
    }


def _sign(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    ts = int(time.time())
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.{payload.decode('utf-8')}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


@pytest.fixture()
def make_subscription() -> Callable[..., dict[str, Any]]:
    return _subscription_payload


@pytest.fixture()
def make_event() -> Callable[..., dict[str, Any]]:
    return _event_payload


@pytest.fixture()
def sign() -> Callable[..., str]:
    return _sign


# ---------------------------------------------------------------------------
# Settings and database
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings(tmp_path: Path) -> APISettings:
    """Return a settings object suitable for testing."""
    return APISettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        platform_env="dev",
        stripe_secret_key="sk_test_unused",
        stripe_webhook_secret=WEBHOOK_SECRET,
        admin_secret_key=ADMIN_SECRET,
    )


@pytest.fixture()
def engine_settings() -> BillingEngineSettings:
    return BillingEngineSettings(
        price_standard="price_standard",
        price_promo_intro="price_promo",
        price_annual="price_annual",
        price_lifetime="price_lifetime",
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path):
    """Session factory over a fresh file-backed SQLite database."""
    engine = get_local_engine(tmp_path / "api.db")
    await create_local_tables(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def async_session(session_factory: async_sessionmaker[AsyncSession]):
    async with session_factory() as session:
        yield session


@pytest.fixture()
def seed_profile(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[str, str], Awaitable[None]]:
    """Return a coroutine that creates a committed account profile with an email."""

    async def _seed(account_id: str, email: str) -> None:
        async with session_factory() as session:
            await ProfileRepository(session).ensure(account_id, email=email)
            await session.commit()

    return _seed


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


# ---------------------------------------------------------------------------
# FastAPI app and async client
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(
    test_settings: APISettings,
    engine_settings: BillingEngineSettings,
    session_factory: async_sessionmaker[AsyncSession],
    gateway: FakeGateway,
):
    """Create a FastAPI app wired to the test database and fake gateway."""
    application = create_app()
    locks = AccountLockRegistry()

    async def _override_session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_engine_settings] = lambda: engine_settings
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_gateway] = lambda: gateway
    application.dependency_overrides[get_account_locks] = lambda: locks
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncClient:
    """Yield an async httpx client bound to the test app.

    Uses ASGITransport so requests go directly to the ASGI app without
    opening a real TCP socket.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture()
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {ADMIN_SECRET}"}


@pytest.fixture()
def deliver(client: AsyncClient) -> Callable[..., Awaitable[Any]]:
    """Return a coroutine that POSTs a signed event to the webhook endpoint."""

    async def _deliver(event: dict[str, Any], *, secret: str = WEBHOOK_SECRET, signature: str | None = None):
        body = json.dumps(event).encode("utf-8")
        header = signature if signature is not None else _sign(body, secret)
        return await client.post(
            "/api/v1/billing/webhooks",
            content=body,
            headers={"stripe-signature": header, "content-type": "application/json"},
        )

    return _deliver
