"""Flip a promotional plan to standard once its discounted phase has ended."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from billing_engine.errors import StaleEventError
from billing_engine.models.billing import PlanType, SchedulePhase
from billing_engine.models.events import SCHEDULE_COMPLETED, SchedulePhaseObject, SubscriptionScheduleObject
from billing_engine.projectors.entitlement import EntitlementProjector
from billing_engine.state.repository import SubscriptionRepository
from billing_engine.telemetry import BILLING_PLAN_TRANSITIONS_TOTAL

logger = logging.getLogger(__name__)


def active_phase_index(phases: Sequence[SchedulePhaseObject], moment: int) -> int | None:
    """Index of the phase whose ``[start, end)`` window contains *moment*."""
    for index, phase in enumerate(phases):
        window = SchedulePhase(
            price_ref=phase.items[0].price if phase.items else "",
            start=phase.start_date,
            end=phase.end_date,
        )
        if window.contains(moment):
            return index
    return None


class ScheduleTransitionHandler:
    """React to schedule lifecycle events for promotional subscriptions.

    The transition is event-driven: crossing the phase boundary has no
    effect until a schedule event arrives afterwards.
    """

    def __init__(
        self,
        repository: SubscriptionRepository,
        entitlements: EntitlementProjector,
        reject_stale_events: bool = False,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._entitlements = entitlements
        self._reject_stale = reject_stale_events
        self._clock = clock or (lambda: datetime.now(UTC))

    async def handle(
        self,
        event_type: str,
        schedule: SubscriptionScheduleObject,
        event_created: datetime | None = None,
    ) -> bool:
        """Return ``True`` if the local plan was flipped to standard.

        Raises
        ------
        StaleEventError
            If stale rejection is enabled and *event_created* predates the
            stored ``last_event_at``.
        """
        record = await self._repository.get_by_schedule_id(schedule.id)
        if record is None:
            logger.warning("No subscription record for schedule %s; ignoring %s", schedule.id, event_type)
            return False
        if record.plan_type is not PlanType.PROMO_INTRO:
            logger.debug("Account %s already on plan %s", record.account_id, record.plan_type.value)
            return False

        completed = event_type == SCHEDULE_COMPLETED or schedule.status == "completed"
        active = active_phase_index(schedule.phases, int(self._clock().timestamp()))
        if not completed and (active is None or active == 0):
            return False
        if (
            self._reject_stale
            and event_created is not None
            and record.last_event_at is not None
            and event_created < record.last_event_at
        ):
            raise StaleEventError(record.account_id, event_created, record.last_event_at)

        await self._repository.set_plan_type(record.account_id, PlanType.STANDARD, event_created=event_created)
        await self._entitlements.project_record(record.model_copy(update={"plan_type": PlanType.STANDARD}))
        BILLING_PLAN_TRANSITIONS_TOTAL.inc()
        logger.info(
            "Account %s moved from promotional to standard plan (schedule %s, phase=%s, completed=%s)",
            record.account_id,
            schedule.id,
            active,
            completed,
        )
        return True
