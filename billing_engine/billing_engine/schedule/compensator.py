"""Local compensation for a half-configured promotional schedule."""

from __future__ import annotations

import logging

from billing_engine.errors import PartialOrchestrationFailure
from billing_engine.models.billing import OrchestrationOutcome, OrchestrationStatus
from billing_engine.state.repository import SubscriptionRepository
from billing_engine.telemetry import BILLING_PROMOTIONS_DEGRADED_TOTAL

logger = logging.getLogger(__name__)


class FailureCompensator:
    """Consume the promotion after the schedule could not be configured.

    The subscription keeps billing at the promotional price but will not
    move to the standard price automatically.  ``external_schedule_id`` is
    left unset so the transition handler never acts on the orphan schedule.
    """

    def __init__(self, repository: SubscriptionRepository) -> None:
        self._repository = repository

    async def compensate(
        self,
        failure: PartialOrchestrationFailure,
        *,
        event_id: str | None = None,
    ) -> OrchestrationOutcome:
        await self._repository.mark_promo_used(failure.account_id)
        BILLING_PROMOTIONS_DEGRADED_TOTAL.inc()
        logger.error(
            "Promotion consumed without automatic price transition for account %s: %s",
            failure.account_id,
            failure.cause,
            extra={
                "billing": {
                    "account_id": failure.account_id,
                    "event_id": event_id,
                    "schedule_id": failure.schedule_id,
                    "reason": "schedule_phases_not_configured",
                }
            },
        )
        return OrchestrationOutcome(
            account_id=failure.account_id,
            status=OrchestrationStatus.DEGRADED,
            schedule_id=failure.schedule_id,
            reason=str(failure.cause),
        )
