"""Operator actions on an account's billing state.

Grants and revocations write the same subscription record and entitlement
columns the webhook pipeline does, so they take the same per-account lock
and commit before releasing it.  A provider event for the same account
therefore either sees the admin change or runs entirely before it.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from billing_engine.config import BillingEngineSettings
from billing_engine.gateway import PaymentGateway
from billing_engine.locking import AccountLockRegistry
from billing_engine.models.billing import (
    EntitlementStatus,
    PlanType,
    SubscriptionRecord,
    SubscriptionStatus,
)
from billing_engine.projectors import EntitlementProjector, map_status, resolve_period_end
from billing_engine.state import ProfileRepository, PurchaseRepository, SubscriptionRepository
from billing_engine.state.database import acquire_account_lock
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

ADMIN_CUSTOMER_REF = "admin_granted"
DEFAULT_ADMIN_CREDITS = 6


class AccountNotFoundError(LookupError):
    """No account profile matches the given email or id."""


class _AccountStore:
    """Repositories sharing one session."""

    def __init__(self, session: AsyncSession, settings: BillingEngineSettings) -> None:
        self.session = session
        self.subscriptions = SubscriptionRepository(session)
        self.profiles = ProfileRepository(session)
        self.purchases = PurchaseRepository(session)
        self.entitlements = EntitlementProjector(self.profiles, settings)

    async def account_for_email(self, email: str) -> str:
        account_id = await self.profiles.find_account_id_by_email(email)
        if account_id is None:
            raise AccountNotFoundError(f"No account with email {email}")
        return account_id


class AdminService:
    """Billing administration.

    Each mutating call runs in its own transaction, opened from
    *session_factory* and committed while the account lock is held.

    Parameters
    ----------
    session_factory:
        Factory for the per-call database session.
    gateway:
        Payment provider client used by :meth:`sync_account`.
    settings:
        Engine settings carrying the credit grant table.
    locks:
        Per-account lock registry shared with the webhook processor.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        settings: BillingEngineSettings,
        locks: AccountLockRegistry | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._settings = settings
        self._locks = locks or AccountLockRegistry()

    async def grant_pro(self, email: str, report_credits: int = DEFAULT_ADMIN_CREDITS) -> dict[str, Any]:
        """Give an account lifetime pro access and set its credit balance.

        Returns
        -------
        dict
            ``account_id``, the stored ``subscription`` and ``entitlement``.
        """
        async with self._session_factory() as session:
            store = _AccountStore(session, self._settings)
            account_id = await store.account_for_email(email)

            async with self._locks.hold(account_id):
                await acquire_account_lock(session, account_id)
                now = datetime.now(UTC)
                existing = await store.subscriptions.get(account_id)
                record = SubscriptionRecord(
                    account_id=account_id,
                    customer_ref=ADMIN_CUSTOMER_REF,
                    plan_type=PlanType.LIFETIME,
                    status=SubscriptionStatus.ACTIVE,
                    period_start=now,
                    period_end=None,
                    promo_used=existing.promo_used if existing else False,
                    external_schedule_id=existing.external_schedule_id if existing else None,
                    last_event_at=existing.last_event_at if existing else None,
                )
                await store.subscriptions.upsert(record)
                entitlement = await store.profiles.merge_entitlement(
                    account_id,
                    {
                        "status": EntitlementStatus.PRO,
                        "plan_type": PlanType.LIFETIME,
                        "expires_at": None,
                        "cancel_at_period_end": False,
                        "credit_count": report_credits,
                        "credit_granted_at": now,
                        "granted_by_admin": True,
                    },
                )
                stored = await store.subscriptions.get(account_id)
                await session.commit()

        logger.info("Admin granted lifetime pro to account=%s with %d credit(s)", account_id, report_credits)
        return {"account_id": account_id, "subscription": stored, "entitlement": entitlement}

    async def revoke_pro(self, email: str) -> dict[str, Any]:
        """Return an account to the free tier.

        The subscription record is kept and marked expired; ``promo_used``
        survives so the promotion cannot be claimed again.
        """
        async with self._session_factory() as session:
            store = _AccountStore(session, self._settings)
            account_id = await store.account_for_email(email)

            async with self._locks.hold(account_id):
                await acquire_account_lock(session, account_id)
                if await store.subscriptions.get(account_id) is not None:
                    await store.subscriptions.set_status(account_id, SubscriptionStatus.EXPIRED)
                entitlement = await store.profiles.merge_entitlement(
                    account_id,
                    {
                        "status": EntitlementStatus.FREE,
                        "plan_type": None,
                        "expires_at": None,
                        "cancel_at_period_end": False,
                        "credit_count": 0,
                        "granted_by_admin": False,
                    },
                )
                stored = await store.subscriptions.get(account_id)
                await session.commit()

        logger.info("Admin revoked pro access from account=%s", account_id)
        return {"account_id": account_id, "subscription": stored, "entitlement": entitlement}

    async def account_billing(self, account_id: str) -> dict[str, Any]:
        """Summarise everything stored about an account's billing."""
        async with self._session_factory() as session:
            store = _AccountStore(session, self._settings)
            subscription = await store.subscriptions.get(account_id)
            entitlement = await store.profiles.get_entitlement(account_id)
            if subscription is None and entitlement is None:
                raise AccountNotFoundError(f"No billing state for account {account_id}")
            purchases = await store.purchases.list_for_account(account_id)

        total_credits = sum(self._settings.credit_grants.get(p["product_type"], 0) for p in purchases)
        return {
            "account_id": account_id,
            "subscription": subscription,
            "entitlement": entitlement,
            "purchases": purchases,
            "total_purchased_credits": total_credits,
        }

    async def sync_account(self, account_id: str) -> SubscriptionRecord:
        """Refresh the provider-owned fields of the stored record.

        Raises
        ------
        AccountNotFoundError
            If the account has no subscription record.
        TransientExternalError
            If the provider call fails; nothing is written.
        """
        async with self._session_factory() as session, self._locks.hold(account_id):
            store = _AccountStore(session, self._settings)
            await acquire_account_lock(session, account_id)
            record = await store.subscriptions.get(account_id)
            if record is None:
                raise AccountNotFoundError(f"No subscription record for account {account_id}")
            if record.subscription_ref is None:
                return record

            remote = await self._gateway.retrieve_subscription(record.subscription_ref)
            status = map_status(remote.status)
            period_end = resolve_period_end(remote) or record.period_end
            await store.subscriptions.refresh_remote_state(
                account_id,
                status=status,
                cancel_at_period_end=remote.cancel_at_period_end,
                period_end=period_end,
            )
            refreshed = await store.subscriptions.get(account_id)
            assert refreshed is not None
            await store.entitlements.project_record(refreshed)
            await session.commit()

        logger.info(
            "Synced account=%s from subscription %s (status=%s)",
            account_id,
            record.subscription_ref,
            status.value,
        )
        return refreshed
