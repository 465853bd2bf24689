"""Shared fixtures for billing engine unit tests.

Provides a file-backed SQLite database per test, a fake payment gateway,
and factories for signed provider event payloads.
"""

from __future__ import annotations

import hashlib
import hmac
import itertools
import json
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.config import BillingEngineSettings
from billing_engine.errors import TransientExternalError
from billing_engine.ingress import EventAuthenticator
from billing_engine.locking import AccountLockRegistry
from billing_engine.models.events import SubscriptionObject
from billing_engine.processor import WebhookProcessor
from billing_engine.state.sqlite_adapter import create_local_tables, get_local_engine

WEBHOOK_SECRET = "whsec_test_secret"

# 2024-06-01T00:00:00Z
PERIOD_START = 1717200000
PERIOD_END = PERIOD_START + 30 * 24 * 3600


# ---------------------------------------------------------------------------
# Fake payment gateway
# ---------------------------------------------------------------------------


class FakeGateway:
    """In-memory :class:`~billing_engine.gateway.PaymentGateway`."""

    def __init__(self) -> None:
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.created_schedules: list[str] = []
        self.schedule_updates: list[tuple[str, list[dict[str, Any]]]] = []
        self.retrieve_calls: list[str] = []
        self.fail_retrieve = False
        self.fail_create = False
        self.fail_update = False
        self._ids = itertools.count(1)

    def add_subscription(self, payload: dict[str, Any]) -> None:
        self.subscriptions[payload["id"]] = payload

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionObject:
        self.retrieve_calls.append(subscription_id)
        if self.fail_retrieve or subscription_id not in self.subscriptions:
            raise TransientExternalError("retrieve_subscription", f"no such subscription: {subscription_id}")
        return SubscriptionObject.model_validate(self.subscriptions[subscription_id])

    async def create_schedule_from_subscription(self, subscription_id: str) -> str:
        if self.fail_create:
            raise TransientExternalError("create_schedule", "provider unavailable")
        schedule_id = f"sub_sched_{next(self._ids)}"
        self.created_schedules.append(schedule_id)
        return schedule_id

    async def update_schedule(self, schedule_id: str, phases: list[dict[str, Any]]) -> None:
        if self.fail_update:
            raise TransientExternalError("update_schedule", "provider unavailable")
        self.schedule_updates.append((schedule_id, phases))


# ---------------------------------------------------------------------------
# Payload factories
# ---------------------------------------------------------------------------


def _subscription_payload(
    sub_id: str = "sub_123",
    *,
    customer: str = "cus_123",
    status: str = "active",
    price: str = "price_standard",
    user_id: str | None = "acct-1",
    period_start: int | None = PERIOD_START,
    period_end: int | None = PERIOD_END,
    item_periods: bool = False,
    cancel_at_period_end: bool = False,
    metadata: dict[str, str] | None = None,
) -> dict[str, Any]:
    meta = dict(metadata or {})
    if user_id is not None:
        meta.setdefault("user_id", user_id)
    item: dict[str, Any] = {"price": {"id": price}, "quantity": 1}
    payload: dict[str, Any] = {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "start_date": PERIOD_START,
        "cancel_at_period_end": cancel_at_period_end,
        "metadata": meta,
        "items": {"data": [item]},
    }
    if item_periods:
        item["current_period_start"] = period_start
        item["current_period_end"] = period_end
    else:
        payload["current_period_start"] = period_start
        payload["current_period_end"] = period_end
    return payload


def _event_payload(
    event_type: str,
    obj: dict[str, Any],
    *,
    event_id: str = "evt_1",
    created: int | None = None,
) -> dict[str, Any]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created if created is not None else PERIOD_START + 60,
        "data": {"object": obj},
    }


def _sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.{payload.decode('utf-8')}".encode()
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
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


@pytest.fixture()
def signed() -> Callable[[dict[str, Any]], tuple[bytes, str]]:
    """Serialize an event dict and return ``(body, signature_header)``."""

    def _signed(event: dict[str, Any]) -> tuple[bytes, str]:
        body = json.dumps(event).encode("utf-8")
        return body, _sign(body)

    return _signed


# ---------------------------------------------------------------------------
# Settings, database and processor
# ---------------------------------------------------------------------------


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
    engine = get_local_engine(tmp_path / "billing.db")
    await create_local_tables(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def async_session(session_factory: async_sessionmaker[AsyncSession]):
    async with session_factory() as session:
        yield session


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def processor(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: FakeGateway,
    engine_settings: BillingEngineSettings,
) -> WebhookProcessor:
    return WebhookProcessor(
        EventAuthenticator(WEBHOOK_SECRET),
        session_factory,
        gateway,
        engine_settings,
        locks=AccountLockRegistry(),
    )


@pytest.fixture()
def webhook_secret() -> str:
    return WEBHOOK_SECRET
