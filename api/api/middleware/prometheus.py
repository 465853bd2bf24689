"""Prometheus metrics middleware for HTTP request instrumentation.

Exposes RED metrics (Rate, Errors, Duration) as Prometheus counters and
histograms.  Path normalisation collapses account ids and other path
parameters (e.g. ``/admin/accounts/acct-42/sync`` ->
``/admin/accounts/{id}/sync``) to prevent unbounded label cardinality.
"""

from __future__ import annotations

import re
import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

HTTP_REQUESTS_TOTAL = Counter(
    "billing_http_requests_total",
    "Total HTTP requests by method, path, and status code",
    ["method", "path", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "billing_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ---------------------------------------------------------------------------
# Path normalisation
# ---------------------------------------------------------------------------

_ACCOUNT_SEGMENT = re.compile(r"(/accounts/)[^/]+")

_PATH_PARAM_PATTERNS = [
    # UUIDs (8-4-4-4-12 hex format)
    (re.compile(r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"), "/{id}"),
    # Pure numeric segments
    (re.compile(r"/\d+(?=/|$)"), "/{id}"),
]


def _normalise_path(path: str) -> str:
    """Collapse path parameters to prevent cardinality explosion."""
    path = _ACCOUNT_SEGMENT.sub(r"\1{id}", path)
    for pattern, replacement in _PATH_PARAM_PATTERNS:
        path = pattern.sub(replacement, path)
    return path


# Paths excluded from metrics recording.
_SKIP_PATHS: frozenset[str] = frozenset({"/metrics", "/docs", "/redoc", "/openapi.json", "/favicon.ico"})


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Record HTTP request rate, error rate, and latency as Prometheus metrics."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in _SKIP_PATHS:
            return await call_next(request)

        method = request.method
        normalised = _normalise_path(path)

        start = time.monotonic()
        response = await call_next(request)
        duration = time.monotonic() - start

        HTTP_REQUESTS_TOTAL.labels(method=method, path=normalised, status_code=str(response.status_code)).inc()
        HTTP_REQUEST_DURATION.labels(method=method, path=normalised).observe(duration)
        return response
