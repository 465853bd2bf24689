"""API router modules for the billing sync service."""

from __future__ import annotations

from api.routers import admin, health, metrics, webhooks

__all__ = [
    "admin",
    "health",
    "metrics",
    "webhooks",
]
