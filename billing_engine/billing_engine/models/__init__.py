"""Domain and event models for the billing engine."""

from billing_engine.models.billing import (
    ENTITLEMENT_FIELDS,
    PROMO_PHASE_SECONDS,
    EntitlementProjection,
    EntitlementStatus,
    EventOutcome,
    OrchestrationOutcome,
    OrchestrationStatus,
    PhaseSchedule,
    PlanType,
    ProcessingResult,
    ProductType,
    SchedulePhase,
    SubscriptionRecord,
    SubscriptionStatus,
    UpstreamStatus,
)

__all__ = [
    "ENTITLEMENT_FIELDS",
    "PROMO_PHASE_SECONDS",
    "EntitlementProjection",
    "EntitlementStatus",
    "EventOutcome",
    "OrchestrationOutcome",
    "OrchestrationStatus",
    "PhaseSchedule",
    "PlanType",
    "ProcessingResult",
    "ProductType",
    "SchedulePhase",
    "SubscriptionRecord",
    "SubscriptionStatus",
    "UpstreamStatus",
]
