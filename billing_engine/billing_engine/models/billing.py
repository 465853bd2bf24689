"""Domain models for the local billing projections.

The subscription record is the app's authoritative copy of an account's
billing state; the entitlement projection is the user-facing summary derived
from it.  Both are keyed by account id.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator

# Fixed length of the discounted phase of the promotional schedule.
PROMO_PHASE_SECONDS = 7 * 24 * 3600


# ---------------------------------------------------------------------------
# Closed enums
# ---------------------------------------------------------------------------


class PlanType(str, Enum):
    """Billing plan of a subscription record."""

    STANDARD = "standard"
    PROMO_INTRO = "promo_intro"
    ANNUAL = "annual"
    LIFETIME = "lifetime"


class SubscriptionStatus(str, Enum):
    """Local subscription status."""

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"


class UpstreamStatus(str, Enum):
    """Every subscription status the payment provider can report."""

    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    PAUSED = "paused"


class EntitlementStatus(str, Enum):
    """User-facing access level written to the account profile."""

    PRO = "pro"
    FREE = "free"
    EXPIRED = "expired"


class ProductType(str, Enum):
    """One-time (non-recurring) products sold through checkout."""

    REPORT = "report"
    REPORT_BUNDLE_3 = "report_bundle_3"
    REPORT_BUNDLE_6 = "report_bundle_6"
    LIFETIME = "lifetime"


# ---------------------------------------------------------------------------
# Subscription record
# ---------------------------------------------------------------------------


class SubscriptionRecord(BaseModel):
    """One row of the ``subscriptions`` table.

    ``period_end`` is ``None`` exactly when the plan is lifetime; the
    validator rejects any other combination.
    """

    account_id: str = Field(..., min_length=1)
    customer_ref: str
    subscription_ref: str | None = None
    price_ref: str | None = None
    plan_type: PlanType
    status: SubscriptionStatus
    period_start: datetime
    period_end: datetime | None = None
    cancel_at_period_end: bool = False
    promo_used: bool = False
    external_schedule_id: str | None = None
    last_event_at: datetime | None = None

    @model_validator(mode="after")
    def _period_end_iff_recurring(self) -> SubscriptionRecord:
        is_lifetime = self.plan_type is PlanType.LIFETIME
        if is_lifetime and self.period_end is not None:
            raise ValueError("lifetime records must not carry a period_end")
        if not is_lifetime and self.period_end is None:
            raise ValueError(f"{self.plan_type.value} records require a period_end")
        return self


# ---------------------------------------------------------------------------
# Entitlement projection
# ---------------------------------------------------------------------------

# Columns of the account profile that this engine is allowed to write.
ENTITLEMENT_FIELDS: frozenset[str] = frozenset(
    {
        "status",
        "plan_type",
        "expires_at",
        "cancel_at_period_end",
        "credit_count",
        "credit_granted_at",
        "granted_by_admin",
    }
)


class EntitlementProjection(BaseModel):
    """Entitlement summary embedded on the account profile."""

    account_id: str
    status: EntitlementStatus = EntitlementStatus.FREE
    plan_type: PlanType | None = None
    expires_at: datetime | None = None
    cancel_at_period_end: bool = False
    credit_count: int = Field(default=0, ge=0)
    credit_granted_at: datetime | None = None
    granted_by_admin: bool = False


# ---------------------------------------------------------------------------
# Phase schedule
# ---------------------------------------------------------------------------


class SchedulePhase(BaseModel):
    """One segment of a price timeline.  Times are UNIX seconds."""

    price_ref: str
    quantity: int = 1
    start: int
    end: int | None = None

    def contains(self, moment: int) -> bool:
        """Return ``True`` if *moment* falls in ``[start, end)``.

        An open-ended phase matches every moment at or after its start.
        """
        if moment < self.start:
            return False
        return self.end is None or moment < self.end

    def to_provider(self) -> dict[str, Any]:
        """Render the phase in the payment provider's schedule format."""
        phase: dict[str, Any] = {
            "items": [{"price": self.price_ref, "quantity": self.quantity}],
            "start_date": self.start,
        }
        if self.end is not None:
            phase["end_date"] = self.end
        return phase


class PhaseSchedule(BaseModel):
    """Two-phase promotional schedule: discounted phase, then standard price."""

    phases: tuple[SchedulePhase, SchedulePhase]

    @model_validator(mode="after")
    def _validate_shape(self) -> PhaseSchedule:
        promo, standard = self.phases
        if promo.end is None or promo.end - promo.start != PROMO_PHASE_SECONDS:
            raise ValueError(f"promotional phase must last exactly {PROMO_PHASE_SECONDS} seconds")
        if standard.start != promo.end:
            raise ValueError("standard phase must start where the promotional phase ends")
        if standard.end is not None:
            raise ValueError("standard phase must be open-ended")
        return self

    @classmethod
    def promotional(
        cls,
        *,
        start: int,
        promo_price_ref: str,
        standard_price_ref: str,
        quantity: int = 1,
    ) -> PhaseSchedule:
        """Build the discounted → standard schedule starting at *start*."""
        promo_end = start + PROMO_PHASE_SECONDS
        return cls(
            phases=(
                SchedulePhase(price_ref=promo_price_ref, quantity=quantity, start=start, end=promo_end),
                SchedulePhase(price_ref=standard_price_ref, quantity=quantity, start=promo_end, end=None),
            )
        )

    def to_provider(self) -> list[dict[str, Any]]:
        return [phase.to_provider() for phase in self.phases]


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class OrchestrationStatus(str, Enum):
    COMPLETED = "completed"
    DEGRADED = "degraded"
    SKIPPED = "skipped"


class OrchestrationOutcome(BaseModel):
    """Typed result of attaching a promotional schedule.

    A ``DEGRADED`` outcome means the promotion was consumed but the automatic
    price transition was not configured; ``schedule_id`` then names the
    orphaned remote schedule for operator follow-up.
    """

    account_id: str
    status: OrchestrationStatus
    schedule_id: str | None = None
    reason: str | None = None


class EventOutcome(str, Enum):
    """How the processor disposed of one inbound event."""

    PROCESSED = "processed"
    IGNORED = "ignored"
    DROPPED = "dropped"
    QUARANTINED = "quarantined"
    STALE = "stale"


class ProcessingResult(BaseModel):
    """Result returned to the webhook endpoint for one event."""

    event_id: str | None = None
    event_type: str | None = None
    account_id: str | None = None
    outcome: EventOutcome
    detail: str | None = None
