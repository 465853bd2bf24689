"""State persistence layer for subscription, profile and purchase records."""

from billing_engine.state.database import acquire_account_lock, get_engine
from billing_engine.state.repository import (
    ProfileRepository,
    PurchaseRepository,
    SubscriptionRepository,
)

__all__ = [
    "ProfileRepository",
    "PurchaseRepository",
    "SubscriptionRepository",
    "acquire_account_lock",
    "get_engine",
]
