"""Prometheus counters for billing event processing.

``billing_promotions_degraded_total`` is the operator signal for accounts
whose promotion was consumed without an automatic price transition.
"""

from __future__ import annotations

from prometheus_client import Counter

BILLING_EVENTS_TOTAL = Counter(
    "billing_events_total",
    "Billing events by type and outcome",
    ["event_type", "outcome"],
)

BILLING_PROMOTIONS_DEGRADED_TOTAL = Counter(
    "billing_promotions_degraded_total",
    "Promotional checkouts whose price schedule could not be configured",
)

BILLING_PLAN_TRANSITIONS_TOTAL = Counter(
    "billing_plan_transitions_total",
    "Promotional plans flipped to standard after the discounted phase",
)


def record_event(event_type: str | None, outcome: str) -> None:
    """Increment the per-type outcome counter."""
    BILLING_EVENTS_TOTAL.labels(event_type=event_type or "unknown", outcome=outcome).inc()
