"""Subscription projector: event payload → canonical subscription record.

Upstream payloads are inconsistent about where billing-period fields live
(subscription level in older API versions, per billed item in newer ones),
so periods are resolved through ordered fallback chains.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from pydantic import ValidationError

from billing_engine.config import BillingEngineSettings
from billing_engine.errors import EventValidationError, StaleEventError
from billing_engine.models.billing import (
    PlanType,
    SubscriptionRecord,
    SubscriptionStatus,
    UpstreamStatus,
)
from billing_engine.models.events import SubscriptionObject
from billing_engine.state.repository import SubscriptionRepository

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Total mapping over every status the provider can report.  Adding a member
# to UpstreamStatus without extending this table fails the totality test.
_STATUS_TABLE: dict[UpstreamStatus, SubscriptionStatus] = {
    UpstreamStatus.ACTIVE: SubscriptionStatus.ACTIVE,
    UpstreamStatus.TRIALING: SubscriptionStatus.TRIALING,
    UpstreamStatus.PAST_DUE: SubscriptionStatus.PAST_DUE,
    UpstreamStatus.CANCELED: SubscriptionStatus.CANCELED,
    UpstreamStatus.INCOMPLETE: SubscriptionStatus.EXPIRED,
    UpstreamStatus.INCOMPLETE_EXPIRED: SubscriptionStatus.EXPIRED,
    UpstreamStatus.UNPAID: SubscriptionStatus.EXPIRED,
    UpstreamStatus.PAUSED: SubscriptionStatus.EXPIRED,
}

# Metadata aliases used by older checkout flows.
_PLAN_ALIASES: dict[str, PlanType] = {"monthly": PlanType.STANDARD}


def utcnow() -> datetime:
    return datetime.now(UTC)


def map_status(upstream: str | None) -> SubscriptionStatus:
    """Map an upstream status string to the local status enum.

    Unrecognised and missing values map to ``expired``.
    """
    try:
        return _STATUS_TABLE[UpstreamStatus(upstream)]
    except ValueError:
        logger.warning("Unrecognised upstream subscription status %r; treating as expired", upstream)
        return SubscriptionStatus.EXPIRED


def parse_plan_type(value: str | None) -> PlanType | None:
    """Parse a ``plan_type`` metadata value; empty or unknown values give ``None``."""
    if not value:
        return None
    value = value.strip().lower()
    if value in _PLAN_ALIASES:
        return _PLAN_ALIASES[value]
    try:
        return PlanType(value)
    except ValueError:
        logger.warning("Unknown plan_type metadata value %r", value)
        return None


def _from_timestamp(value: int | None) -> datetime | None:
    return datetime.fromtimestamp(value, tz=UTC) if value is not None else None


def resolve_period_start(subscription: SubscriptionObject, now: datetime) -> datetime:
    """Subscription field, then first billed item, then subscription start, then *now*."""
    item = subscription.first_item
    for candidate in (
        subscription.current_period_start,
        item.current_period_start if item is not None else None,
        subscription.start_date,
    ):
        if candidate is not None:
            return _from_timestamp(candidate)  # type: ignore[return-value]
    return now


def resolve_period_end(subscription: SubscriptionObject) -> datetime | None:
    """Subscription field, then first billed item; ``None`` if both are absent."""
    if subscription.current_period_end is not None:
        return _from_timestamp(subscription.current_period_end)
    item = subscription.first_item
    if item is not None and item.current_period_end is not None:
        return _from_timestamp(item.current_period_end)
    return None


def resolve_plan_type(
    settings: BillingEngineSettings,
    subscription: SubscriptionObject,
    existing: SubscriptionRecord | None,
    declared: PlanType | None = None,
) -> PlanType:
    """Decide the plan of a recurring subscription.

    Order: *declared* (checkout metadata), configured price table, the
    subscription's ``plan_type`` metadata, stored record, ``standard``.  A
    record already moved from the promotional phase to standard is never
    moved back.
    """
    plan = (
        declared
        or settings.plan_for_price(subscription.price_ref)
        or parse_plan_type(subscription.metadata.get("plan_type"))
        or (existing.plan_type if existing is not None else None)
        or PlanType.STANDARD
    )
    if (
        plan is PlanType.PROMO_INTRO
        and existing is not None
        and existing.promo_used
        and existing.plan_type is PlanType.STANDARD
    ):
        return PlanType.STANDARD
    return plan


class SubscriptionProjector:
    """Resolve and upsert the canonical subscription record for an account.

    Parameters
    ----------
    repository:
        Subscription repository bound to the current transaction.
    reject_stale_events:
        When ``True``, an event older than the stored ``last_event_at`` raises
        :class:`StaleEventError` instead of overwriting newer state.
    clock:
        Source of "now" for the period-start fallback.
    """

    def __init__(
        self,
        repository: SubscriptionRepository,
        *,
        reject_stale_events: bool = False,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._reject_stale = reject_stale_events
        self._clock = clock

    async def upsert(
        self,
        account_id: str,
        customer_ref: str,
        subscription: SubscriptionObject | None,
        plan_type: PlanType,
        *,
        event_created: datetime | None = None,
        status_override: SubscriptionStatus | None = None,
    ) -> SubscriptionRecord:
        """Derive the record from *subscription* and write it keyed by *account_id*.

        ``subscription`` is ``None`` for a non-recurring lifetime purchase.
        Replaying identical inputs yields the identical record.

        Raises
        ------
        EventValidationError
            If the payload cannot produce a record satisfying the
            lifetime/period-end invariant.
        StaleEventError
            If stale rejection is enabled and *event_created* predates the
            stored version.
        """
        now = self._clock()
        existing = await self._repository.get(account_id)

        if (
            self._reject_stale
            and existing is not None
            and existing.last_event_at is not None
            and event_created is not None
            and event_created < existing.last_event_at
        ):
            raise StaleEventError(account_id, event_created, existing.last_event_at)

        if subscription is None:
            fields = {
                "subscription_ref": None,
                "price_ref": None,
                "status": status_override or SubscriptionStatus.ACTIVE,
                "period_start": event_created or now,
                "period_end": None,
                "cancel_at_period_end": False,
            }
        else:
            fields = {
                "subscription_ref": subscription.id,
                "price_ref": subscription.price_ref,
                "status": status_override or map_status(subscription.status),
                "period_start": resolve_period_start(subscription, now),
                "period_end": resolve_period_end(subscription),
                "cancel_at_period_end": subscription.cancel_at_period_end,
            }

        try:
            record = SubscriptionRecord(
                account_id=account_id,
                customer_ref=customer_ref,
                plan_type=plan_type,
                promo_used=existing.promo_used if existing is not None else False,
                external_schedule_id=existing.external_schedule_id if existing is not None else None,
                last_event_at=event_created,
                **fields,
            )
        except ValidationError as exc:
            raise EventValidationError(
                f"cannot project subscription for account {account_id}: {exc.errors()[0]['msg']}",
                quarantined=True,
            ) from exc

        await self._repository.upsert(record)
        logger.info(
            "Upserted subscription account=%s plan=%s status=%s",
            account_id,
            record.plan_type.value,
            record.status.value,
        )
        return record
