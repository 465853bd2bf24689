"""Entitlement projector: subscription record → account profile entitlement.

Every write is a field-level merge limited to the columns the triggering
event is entitled to change.  A subscription event never touches the credit
balance unless it carries a grant, and a credit purchase never touches the
access status.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from billing_engine.config import BillingEngineSettings
from billing_engine.models.billing import (
    EntitlementProjection,
    EntitlementStatus,
    PlanType,
    SubscriptionRecord,
    SubscriptionStatus,
)
from billing_engine.state.repository import ProfileRepository

logger = logging.getLogger(__name__)

_ENTITLEMENT_TABLE: dict[SubscriptionStatus, EntitlementStatus] = {
    SubscriptionStatus.ACTIVE: EntitlementStatus.PRO,
    SubscriptionStatus.TRIALING: EntitlementStatus.PRO,
    SubscriptionStatus.PAST_DUE: EntitlementStatus.PRO,
    SubscriptionStatus.CANCELED: EntitlementStatus.EXPIRED,
    SubscriptionStatus.EXPIRED: EntitlementStatus.EXPIRED,
}


def entitlement_status_for(status: SubscriptionStatus) -> EntitlementStatus:
    return _ENTITLEMENT_TABLE[status]


class EntitlementProjector:
    """Write entitlement fields onto the account profile.

    Parameters
    ----------
    repository:
        Profile repository bound to the current transaction.
    settings:
        Engine settings carrying the credit grant table.
    """

    def __init__(self, repository: ProfileRepository, settings: BillingEngineSettings) -> None:
        self._repository = repository
        self._settings = settings

    def credit_grant_for(self, key: str) -> int | None:
        """Return the one-time credit grant for a plan or product type, if any."""
        return self._settings.credit_grants.get(key)

    async def project(
        self,
        account_id: str,
        *,
        status: EntitlementStatus,
        plan_type: PlanType | None = None,
        expires_at: datetime | None = None,
        cancel_at_period_end: bool = False,
        credit_grant: int | None = None,
        granted_at: datetime | None = None,
    ) -> EntitlementProjection:
        """Merge the access fields, plus the credit balance when *credit_grant* is given.

        A grant sets the balance rather than adding to it, so a redelivered
        event leaves the same balance as the first delivery.
        """
        fields: dict[str, Any] = {
            "status": status,
            "plan_type": plan_type,
            "expires_at": expires_at,
            "cancel_at_period_end": cancel_at_period_end,
        }
        if credit_grant is not None:
            fields["credit_count"] = credit_grant
            fields["credit_granted_at"] = granted_at
        projection = await self._repository.merge_entitlement(account_id, fields)
        logger.info(
            "Projected entitlement account=%s status=%s plan=%s credits=%d",
            account_id,
            projection.status.value,
            projection.plan_type.value if projection.plan_type else None,
            projection.credit_count,
        )
        return projection

    async def project_record(
        self,
        record: SubscriptionRecord,
        *,
        credit_grant: int | None = None,
        granted_at: datetime | None = None,
    ) -> EntitlementProjection:
        """Project the entitlement implied by a stored subscription record."""
        return await self.project(
            record.account_id,
            status=entitlement_status_for(record.status),
            plan_type=record.plan_type,
            expires_at=record.period_end,
            cancel_at_period_end=record.cancel_at_period_end,
            credit_grant=credit_grant,
            granted_at=granted_at,
        )

    async def add_credits(self, account_id: str, amount: int, granted_at: datetime) -> EntitlementProjection:
        """Increase the credit balance only; access fields are left as they are."""
        projection = await self._repository.add_credits(account_id, amount, granted_at)
        logger.info("Granted %d credit(s) to account=%s (balance %d)", amount, account_id, projection.credit_count)
        return projection
