"""Rate-limiting middleware -- sliding-window, per client IP.

Operator endpoints under ``/api/v1/admin`` share one budget per client
address (30 requests per 60 seconds by default).  Webhook deliveries, health
probes and the metrics scrape are never limited: the provider retries on any
non-2xx answer and throttling it would only delay synchronization.

.. warning:: **Single-replica limitation**

   Counters live in process memory.  Each worker keeps its own window, and
   a restart resets every budget.  With *N* workers a client effectively
   gets *N x* the configured limit.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any

from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class RateLimitConfig(BaseModel):
    """Rate-limiting configuration parameters.

    Attributes:
        enabled: Master toggle.  When ``False`` the middleware becomes a
            no-op pass-through.
        requests: Request budget per client within one window.
        window_seconds: Length of the sliding window.
        limited_prefixes: Path prefixes the budget applies to.  Every other
            path passes through untouched.
        trust_forwarded_for: Key clients by the first ``X-Forwarded-For``
            entry instead of the socket address.  Only enable behind a
            proxy that overwrites the header.
    """

    enabled: bool = True
    requests: int = 30
    window_seconds: float = 60.0
    limited_prefixes: tuple[str, ...] = ("/api/v1/admin",)
    trust_forwarded_for: bool = False


# ---------------------------------------------------------------------------
# Sliding window counter
# ---------------------------------------------------------------------------

_CLEANUP_INTERVAL_SECONDS: float = 60.0


class SlidingWindowCounter:
    """Asyncio-safe sliding window request counter.

    Each client key maps to a :class:`~collections.deque` of monotonic
    timestamps.  Calling :meth:`hit` prunes entries older than
    ``window_seconds`` before appending the current timestamp.
    """

    def __init__(self, window_seconds: float = 60.0) -> None:
        self._window: float = window_seconds
        self._buckets: dict[str, deque[float]] = {}
        self._lock: asyncio.Lock = asyncio.Lock()
        self._cleanup_task: asyncio.Task[None] | None = None
        self._running: bool = False

    # -- Lifecycle -----------------------------------------------------------

    def start(self) -> None:
        """Launch the periodic cleanup coroutine."""
        if self._running:
            return
        self._running = True
        self._cleanup_task = asyncio.ensure_future(self._cleanup_loop())

    async def stop(self) -> None:
        """Cancel the cleanup loop and wait for it to finish."""
        self._running = False
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    # -- Core API ------------------------------------------------------------

    def _prune(self, bucket: deque[float], now: float) -> None:
        cutoff = now - self._window
        while bucket and bucket[0] <= cutoff:
            bucket.popleft()

    async def hit(self, key: str) -> int:
        """Record a request for *key* and return the count inside the window."""
        now = time.monotonic()
        async with self._lock:
            bucket = self._buckets.setdefault(key, deque())
            self._prune(bucket, now)
            bucket.append(now)
            return len(bucket)

    async def count(self, key: str) -> int:
        """Return the current request count without recording a new hit."""
        now = time.monotonic()
        async with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                return 0
            self._prune(bucket, now)
            return len(bucket)

    async def time_until_reset(self, key: str) -> float:
        """Seconds until the oldest entry in *key*'s window expires."""
        now = time.monotonic()
        async with self._lock:
            bucket = self._buckets.get(key)
            if not bucket:
                return 0.0
            return max(bucket[0] + self._window - now, 0.0)

    # -- Housekeeping --------------------------------------------------------

    async def _cleanup_loop(self) -> None:
        """Remove keys whose entries have all expired."""
        while self._running:
            await asyncio.sleep(_CLEANUP_INTERVAL_SECONDS)
            now = time.monotonic()
            async with self._lock:
                stale_keys: list[str] = []
                for key, bucket in self._buckets.items():
                    self._prune(bucket, now)
                    if not bucket:
                        stale_keys.append(key)
                for key in stale_keys:
                    del self._buckets[key]
                if stale_keys:
                    logger.debug("Rate-limit cleanup removed %d stale keys", len(stale_keys))


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Starlette middleware enforcing a per-IP sliding-window budget.

    Limited responses carry ``X-RateLimit-Limit``, ``X-RateLimit-Remaining``
    and ``X-RateLimit-Reset``.  A client over budget gets ``429 Too Many
    Requests`` with a ``Retry-After`` header, before authentication runs,
    so guessing the admin secret is throttled too.
    """

    def __init__(self, app: Any, config: RateLimitConfig | None = None) -> None:
        super().__init__(app)
        self._config: RateLimitConfig = config or RateLimitConfig()
        self._counter: SlidingWindowCounter = SlidingWindowCounter(self._config.window_seconds)
        if self._config.enabled:
            self._counter.start()
        logger.info(
            "RateLimitMiddleware initialised (enabled=%s, limit=%d per %.0fs, prefixes=%s)",
            self._config.enabled,
            self._config.requests,
            self._config.window_seconds,
            ",".join(self._config.limited_prefixes),
        )

    def _client_key(self, request: Request) -> str:
        if self._config.trust_forwarded_for:
            forwarded = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
            if forwarded:
                return f"ip:{forwarded}"
        ip = request.client.host if request.client else "unknown"
        return f"ip:{ip}"

    def _is_limited(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self._config.limited_prefixes)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if not self._config.enabled or not self._is_limited(path):
            return await call_next(request)

        limit = self._config.requests
        client_key = self._client_key(request)
        current_count = await self._counter.hit(client_key)

        if current_count > limit:
            retry_after = max(int(await self._counter.time_until_reset(client_key)) + 1, 1)
            logger.warning(
                "Rate limit exceeded: key=%s path=%s count=%d limit=%d",
                client_key,
                path,
                current_count,
                limit,
            )
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests. Please try again later.", "retry_after": retry_after},
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(retry_after),
                },
            )

        response = await call_next(request)

        reset_seconds = max(int(await self._counter.time_until_reset(client_key)) + 1, 1)
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(limit - current_count, 0))
        response.headers["X-RateLimit-Reset"] = str(reset_seconds)
        return response
