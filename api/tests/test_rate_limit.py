"""Tests for api/api/middleware/rate_limit.py

Covers:
- Requests within the budget pass through with rate-limit headers.
- The request after the budget receives 429 with Retry-After.
- Paths outside the limited prefixes are never counted.
- Clients are keyed by IP, optionally via X-Forwarded-For.
- Disabled middleware is a transparent pass-through.
- The assembled app limits the admin surface at 30 requests per window.
"""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from api.middleware.rate_limit import (
    RateLimitConfig,
    RateLimitMiddleware,
    SlidingWindowCounter,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_app(config: RateLimitConfig | None = None) -> Starlette:
    """Build a minimal Starlette app with an admin route and a webhook route."""

    async def _ok(request: Request) -> JSONResponse:
        return JSONResponse({"status": "ok"})

    app = Starlette(
        routes=[
            Route("/api/v1/admin/grant-pro", _ok, methods=["POST"]),
            Route("/api/v1/admin/accounts/acct-1/billing", _ok),
            Route("/api/v1/billing/webhooks", _ok, methods=["POST"]),
        ],
    )
    app.add_middleware(RateLimitMiddleware, config=config or RateLimitConfig(requests=3))
    return app


@pytest_asyncio.fixture()
async def client() -> AsyncClient:
    """Yield an async client bound to a test app with a 3-request budget."""
    transport = ASGITransport(app=_make_app())
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# SlidingWindowCounter unit tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_counter_hit_and_count() -> None:
    counter = SlidingWindowCounter(window_seconds=60.0)
    assert await counter.count("k") == 0
    assert await counter.hit("k") == 1
    assert await counter.hit("k") == 2
    assert await counter.count("k") == 2
    await counter.stop()


@pytest.mark.asyncio
async def test_counter_expiry() -> None:
    """Entries older than the window are pruned on the next access."""
    counter = SlidingWindowCounter(window_seconds=0.1)
    await counter.hit("k")
    assert await counter.time_until_reset("k") > 0.0

    await asyncio.sleep(0.15)
    assert await counter.count("k") == 0
    assert await counter.time_until_reset("k") == 0.0
    await counter.stop()


# ---------------------------------------------------------------------------
# Middleware integration tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_requests_within_limit(client: AsyncClient) -> None:
    for expected_remaining in (2, 1, 0):
        resp = await client.post("/api/v1/admin/grant-pro")
        assert resp.status_code == 200
        assert resp.headers["x-ratelimit-limit"] == "3"
        assert resp.headers["x-ratelimit-remaining"] == str(expected_remaining)
        assert "x-ratelimit-reset" in resp.headers


@pytest.mark.asyncio
async def test_requests_exceeding_limit(client: AsyncClient) -> None:
    for _ in range(3):
        assert (await client.post("/api/v1/admin/grant-pro")).status_code == 200

    resp = await client.post("/api/v1/admin/grant-pro")

    assert resp.status_code == 429
    assert int(resp.headers["retry-after"]) >= 1
    assert resp.headers["x-ratelimit-remaining"] == "0"
    assert resp.json()["retry_after"] >= 1


@pytest.mark.asyncio
async def test_admin_routes_share_one_budget(client: AsyncClient) -> None:
    for _ in range(3):
        await client.get("/api/v1/admin/accounts/acct-1/billing")

    resp = await client.post("/api/v1/admin/grant-pro")

    assert resp.status_code == 429


@pytest.mark.asyncio
async def test_webhooks_are_not_limited(client: AsyncClient) -> None:
    for _ in range(10):
        resp = await client.post("/api/v1/billing/webhooks")
        assert resp.status_code == 200
        assert "x-ratelimit-limit" not in resp.headers


@pytest.mark.asyncio
async def test_window_resets() -> None:
    app = _make_app(RateLimitConfig(requests=1, window_seconds=0.1))
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        assert (await ac.post("/api/v1/admin/grant-pro")).status_code == 200
        assert (await ac.post("/api/v1/admin/grant-pro")).status_code == 429

        await asyncio.sleep(0.25)

        assert (await ac.post("/api/v1/admin/grant-pro")).status_code == 200


@pytest.mark.asyncio
async def test_forwarded_for_isolates_clients() -> None:
    app = _make_app(RateLimitConfig(requests=1, trust_forwarded_for=True))
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        first = {"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}
        second = {"X-Forwarded-For": "198.51.100.2"}

        assert (await ac.post("/api/v1/admin/grant-pro", headers=first)).status_code == 200
        assert (await ac.post("/api/v1/admin/grant-pro", headers=first)).status_code == 429
        assert (await ac.post("/api/v1/admin/grant-pro", headers=second)).status_code == 200


@pytest.mark.asyncio
async def test_forwarded_for_ignored_by_default(client: AsyncClient) -> None:
    for index in range(3):
        await client.post("/api/v1/admin/grant-pro", headers={"X-Forwarded-For": f"198.51.100.{index}"})

    resp = await client.post("/api/v1/admin/grant-pro", headers={"X-Forwarded-For": "198.51.100.99"})

    assert resp.status_code == 429


@pytest.mark.asyncio
async def test_disabled_is_pass_through() -> None:
    app = _make_app(RateLimitConfig(enabled=False, requests=1))
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        for _ in range(5):
            resp = await ac.post("/api/v1/admin/grant-pro")
            assert resp.status_code == 200
            assert "x-ratelimit-limit" not in resp.headers


# ---------------------------------------------------------------------------
# Assembled application
# ---------------------------------------------------------------------------


class TestAdminSurface:
    """The real app throttles admin callers, authenticated or not."""

    @pytest.mark.asyncio
    async def test_thirty_first_admin_request_is_throttled(self, app, admin_headers) -> None:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            for _ in range(30):
                resp = await ac.get("/api/v1/admin/accounts/acct-404/billing", headers=admin_headers)
                assert resp.status_code == 404

            resp = await ac.get("/api/v1/admin/accounts/acct-404/billing", headers=admin_headers)

        assert resp.status_code == 429
        assert "retry-after" in resp.headers

    @pytest.mark.asyncio
    async def test_bad_tokens_count_against_the_budget(self, app) -> None:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            for _ in range(30):
                resp = await ac.post(
                    "/api/v1/admin/grant-pro",
                    json={"email": "pat@example.com"},
                    headers={"Authorization": "Bearer guess"},
                )
                assert resp.status_code == 403

            resp = await ac.post(
                "/api/v1/admin/grant-pro",
                json={"email": "pat@example.com"},
                headers={"Authorization": "Bearer guess"},
            )

        assert resp.status_code == 429
