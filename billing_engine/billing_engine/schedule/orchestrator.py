"""Attach the two-phase promotional price schedule to a subscription.

Attachment is two remote calls: create a schedule from the subscription
(the provider seeds it with the current billing cycle), then replace its
phases with the discounted phase followed by an open-ended standard phase.
A failure of the second call is compensated locally and never propagates.
"""

from __future__ import annotations

import logging

from billing_engine.config import BillingEngineSettings
from billing_engine.errors import EventValidationError, PartialOrchestrationFailure, TransientExternalError
from billing_engine.gateway import PaymentGateway
from billing_engine.models.billing import (
    OrchestrationOutcome,
    OrchestrationStatus,
    PhaseSchedule,
    SubscriptionRecord,
)
from billing_engine.schedule.compensator import FailureCompensator
from billing_engine.state.repository import SubscriptionRepository

logger = logging.getLogger(__name__)


class PhasedScheduleOrchestrator:
    """Create and configure the promotional schedule for one account.

    Parameters
    ----------
    gateway:
        Payment provider client.
    repository:
        Subscription repository bound to the current transaction.
    compensator:
        Applied when the phases cannot be configured on a created schedule.
    settings:
        Supplies the standard price of the second phase.
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        repository: SubscriptionRepository,
        compensator: FailureCompensator,
        settings: BillingEngineSettings,
    ) -> None:
        self._gateway = gateway
        self._repository = repository
        self._compensator = compensator
        self._settings = settings

    def build_schedule(self, record: SubscriptionRecord) -> PhaseSchedule:
        """Discounted phase from the record's period start, then standard price."""
        return PhaseSchedule.promotional(
            start=int(record.period_start.timestamp()),
            promo_price_ref=record.price_ref or self._settings.price_promo_intro,
            standard_price_ref=self._settings.price_standard,
        )

    async def attach(self, record: SubscriptionRecord, *, event_id: str | None = None) -> OrchestrationOutcome:
        """Attach the schedule described by *record*.

        Returns a ``SKIPPED`` outcome when the account already consumed its
        promotion, so a redelivered checkout never creates a second schedule.

        Raises
        ------
        TransientExternalError
            If the schedule could not be created (nothing remote to undo).
        EventValidationError
            If the record has no remote subscription to schedule.
        """
        if record.external_schedule_id or record.promo_used:
            logger.info(
                "Promotion already applied to account %s (schedule=%s); skipping",
                record.account_id,
                record.external_schedule_id,
            )
            return OrchestrationOutcome(
                account_id=record.account_id,
                status=OrchestrationStatus.SKIPPED,
                schedule_id=record.external_schedule_id,
                reason="promotion already used",
            )
        if not record.subscription_ref:
            raise EventValidationError(
                f"promotional checkout for account {record.account_id} has no subscription",
                quarantined=True,
            )

        schedule = self.build_schedule(record)
        schedule_id = await self._gateway.create_schedule_from_subscription(record.subscription_ref)

        try:
            await self._gateway.update_schedule(schedule_id, schedule.to_provider())
        except TransientExternalError as exc:
            failure = PartialOrchestrationFailure(record.account_id, schedule_id, exc)
            return await self._compensator.compensate(failure, event_id=event_id)

        await self._repository.mark_promo_scheduled(record.account_id, schedule_id)
        logger.info(
            "Attached promotional schedule %s to account %s (standard price from %d)",
            schedule_id,
            record.account_id,
            schedule.phases[1].start,
        )
        return OrchestrationOutcome(
            account_id=record.account_id,
            status=OrchestrationStatus.COMPLETED,
            schedule_id=schedule_id,
        )
