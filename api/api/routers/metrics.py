"""Prometheus metrics endpoint.

Exposes ``GET /metrics`` returning Prometheus text-format metrics, including
the billing event counters recorded by the engine.  Registered WITHOUT the
``/api/v1`` prefix.
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
async def prometheus_metrics() -> PlainTextResponse:
    """Return all registered Prometheus metrics in text exposition format."""
    return PlainTextResponse(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
