"""Middleware components for the billing API."""

from __future__ import annotations

from api.middleware.json_formatter import JSONFormatter
from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.prometheus import PrometheusMiddleware
from api.middleware.rate_limit import RateLimitConfig, RateLimitMiddleware

__all__ = [
    "JSONFormatter",
    "PrometheusMiddleware",
    "RateLimitConfig",
    "RateLimitMiddleware",
    "RequestLoggingMiddleware",
]
