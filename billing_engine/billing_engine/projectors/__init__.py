"""Projectors deriving local billing state from provider events."""

from billing_engine.projectors.entitlement import EntitlementProjector, entitlement_status_for
from billing_engine.projectors.subscription import (
    SubscriptionProjector,
    map_status,
    parse_plan_type,
    resolve_period_end,
    resolve_period_start,
    resolve_plan_type,
)

__all__ = [
    "EntitlementProjector",
    "SubscriptionProjector",
    "entitlement_status_for",
    "map_status",
    "parse_plan_type",
    "resolve_period_end",
    "resolve_period_start",
    "resolve_plan_type",
]
