"""Per-event-type handlers.

:class:`BillingEventHandlers` binds the projectors, orchestrator and
transition handler to one database session and exposes one coroutine per
consumed event type.  Account resolution runs before the per-account lock
is taken; every handler runs while it is held.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.config import BillingEngineSettings
from billing_engine.errors import EventValidationError, StaleEventError
from billing_engine.gateway import PaymentGateway
from billing_engine.models.billing import (
    EventOutcome,
    PlanType,
    ProductType,
    SubscriptionStatus,
)
from billing_engine.models.events import (
    CHECKOUT_SESSION_COMPLETED,
    INVOICE_PAYMENT_FAILED,
    SCHEDULE_COMPLETED,
    SCHEDULE_UPDATED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_UPDATED,
    CheckoutSessionCompleted,
    CheckoutSessionObject,
    InvoicePaymentFailed,
    ScheduleCompleted,
    ScheduleUpdated,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionUpdated,
)
from billing_engine.projectors.entitlement import EntitlementProjector
from billing_engine.projectors.subscription import (
    SubscriptionProjector,
    map_status,
    parse_plan_type,
    resolve_plan_type,
)
from billing_engine.schedule.compensator import FailureCompensator
from billing_engine.schedule.orchestrator import PhasedScheduleOrchestrator
from billing_engine.schedule.transition import ScheduleTransitionHandler
from billing_engine.state.repository import (
    ProfileRepository,
    PurchaseRepository,
    SubscriptionRepository,
)

logger = logging.getLogger(__name__)

HandlerResult = tuple[EventOutcome, str | None]
Handler = Callable[[Any, str], Awaitable[HandlerResult]]

_CREDIT_PRODUCTS = frozenset(
    {
        ProductType.REPORT.value,
        ProductType.REPORT_BUNDLE_3.value,
        ProductType.REPORT_BUNDLE_6.value,
    }
)


def _account_from_metadata(metadata: dict[str, str]) -> str | None:
    user_id = metadata.get("user_id", "").strip()
    return user_id or None


class BillingEventHandlers:
    """Handlers for the consumed event types, bound to one session.

    Parameters
    ----------
    session:
        Session whose transaction spans the whole event.
    gateway:
        Payment provider client.
    settings:
        Engine settings (price table, credit grants, stale rejection).
    clock:
        Source of "now"; injectable for phase-boundary tests.
    """

    def __init__(
        self,
        session: AsyncSession,
        gateway: PaymentGateway,
        settings: BillingEngineSettings,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings
        self._gateway = gateway
        self._clock = clock or (lambda: datetime.now(UTC))

        self.subscriptions = SubscriptionRepository(session)
        self.profiles = ProfileRepository(session)
        self.purchases = PurchaseRepository(session)

        self.projector = SubscriptionProjector(
            self.subscriptions,
            reject_stale_events=settings.reject_stale_events,
            clock=self._clock,
        )
        self.entitlements = EntitlementProjector(self.profiles, settings)
        self.orchestrator = PhasedScheduleOrchestrator(
            gateway,
            self.subscriptions,
            FailureCompensator(self.subscriptions),
            settings,
        )
        self.transitions = ScheduleTransitionHandler(
            self.subscriptions,
            self.entitlements,
            reject_stale_events=settings.reject_stale_events,
            clock=self._clock,
        )

    def table(self) -> dict[str, Handler]:
        return {
            CHECKOUT_SESSION_COMPLETED: self.on_checkout_completed,
            SUBSCRIPTION_CREATED: self.on_subscription_changed,
            SUBSCRIPTION_UPDATED: self.on_subscription_changed,
            SUBSCRIPTION_DELETED: self.on_subscription_changed,
            INVOICE_PAYMENT_FAILED: self.on_invoice_payment_failed,
            SCHEDULE_UPDATED: self.on_schedule_changed,
            SCHEDULE_COMPLETED: self.on_schedule_changed,
        }

    # ------------------------------------------------------------------
    # Account resolution
    # ------------------------------------------------------------------

    async def resolve_account(self, event: Any) -> str | None:
        """Return the account an event belongs to, or ``None`` if unknown.

        Raises
        ------
        EventValidationError
            If a checkout or subscription event lacks ``user_id`` metadata.
        """
        if isinstance(
            event,
            CheckoutSessionCompleted | SubscriptionCreated | SubscriptionUpdated | SubscriptionDeleted,
        ):
            account_id = _account_from_metadata(event.data.obj.metadata)
            if account_id is None:
                raise EventValidationError(f"{event.type} {event.data.obj.id} has no user_id metadata")
            return account_id

        if isinstance(event, InvoicePaymentFailed):
            invoice = event.data.obj
            return _account_from_metadata(invoice.account_metadata) or await self.subscriptions.find_account_id(
                subscription_ref=invoice.subscription_ref
            )

        if isinstance(event, ScheduleUpdated | ScheduleCompleted):
            schedule = event.data.obj
            return await self.subscriptions.find_account_id(
                schedule_id=schedule.id,
                subscription_ref=schedule.subscription,
            )
        return None

    def _check_version(self, account_id: str, event_created: datetime, stored: datetime | None) -> None:
        if self._settings.reject_stale_events and stored is not None and event_created < stored:
            raise StaleEventError(account_id, event_created, stored)

    # ------------------------------------------------------------------
    # checkout.session.completed
    # ------------------------------------------------------------------

    async def on_checkout_completed(self, event: CheckoutSessionCompleted, account_id: str) -> HandlerResult:
        checkout = event.data.obj
        if checkout.mode == "subscription":
            return await self._subscription_checkout(event, checkout, account_id)
        if checkout.mode == "payment":
            return await self._payment_checkout(event, checkout, account_id)
        return EventOutcome.IGNORED, f"checkout mode {checkout.mode} not billed"

    async def _subscription_checkout(
        self,
        event: CheckoutSessionCompleted,
        checkout: CheckoutSessionObject,
        account_id: str,
    ) -> HandlerResult:
        if not checkout.subscription:
            raise EventValidationError(f"subscription checkout {checkout.id} carries no subscription", quarantined=True)

        subscription = await self._gateway.retrieve_subscription(checkout.subscription)
        existing = await self.subscriptions.get(account_id)
        plan = resolve_plan_type(
            self._settings,
            subscription,
            existing,
            declared=parse_plan_type(checkout.metadata.get("plan_type")),
        )
        record = await self.projector.upsert(
            account_id,
            checkout.customer or subscription.customer,
            subscription,
            plan,
            event_created=event.created_at,
        )
        grant_detail = ""
        await self.entitlements.project_record(record)
        if self.entitlements.credit_grant_for(plan.value) is not None:
            granted = await self._grant_once(event, checkout, account_id, plan.value)
            grant_detail = f", {granted} credit(s)"

        if plan is not PlanType.PROMO_INTRO:
            return EventOutcome.PROCESSED, f"subscription checkout ({plan.value}){grant_detail}"
        outcome = await self.orchestrator.attach(record, event_id=event.id)
        return EventOutcome.PROCESSED, f"promotional checkout, schedule {outcome.status.value}"

    async def _grant_once(
        self,
        event: CheckoutSessionCompleted,
        checkout: CheckoutSessionObject,
        account_id: str,
        product_type: str,
    ) -> int:
        """Record the purchase and add its credits; a redelivered session adds nothing."""
        is_new = await self.purchases.record(
            account_id=account_id,
            product_type=product_type,
            checkout_session_id=checkout.id,
            product_id=checkout.metadata.get("product_id"),
            amount=checkout.amount_total,
            currency=checkout.currency,
        )
        if not is_new:
            return 0
        grant = self.entitlements.credit_grant_for(product_type) or 0
        if grant:
            await self.entitlements.add_credits(account_id, grant, event.created_at)
        return grant

    async def _payment_checkout(
        self,
        event: CheckoutSessionCompleted,
        checkout: CheckoutSessionObject,
        account_id: str,
    ) -> HandlerResult:
        product = checkout.metadata.get("product_type", "").strip().lower()
        plan = parse_plan_type(checkout.metadata.get("plan_type"))

        if plan is PlanType.LIFETIME or product == ProductType.LIFETIME.value:
            record = await self.projector.upsert(
                account_id,
                checkout.customer or "",
                None,
                PlanType.LIFETIME,
                event_created=event.created_at,
            )
            await self.entitlements.project_record(record)
            granted = await self._grant_once(event, checkout, account_id, ProductType.LIFETIME.value)
            return EventOutcome.PROCESSED, f"lifetime purchase, {granted} credit(s)"

        if product in _CREDIT_PRODUCTS:
            granted = await self._grant_once(event, checkout, account_id, product)
            if not granted:
                return EventOutcome.PROCESSED, f"{product} purchase already recorded"
            return EventOutcome.PROCESSED, f"{product} purchase, {granted} credit(s)"

        raise EventValidationError(f"payment checkout {checkout.id} names no known product ({product or 'none'})")

    # ------------------------------------------------------------------
    # customer.subscription.*
    # ------------------------------------------------------------------

    async def on_subscription_changed(
        self,
        event: SubscriptionCreated | SubscriptionUpdated | SubscriptionDeleted,
        account_id: str,
    ) -> HandlerResult:
        subscription = event.data.obj
        existing = await self.subscriptions.get(account_id)
        if (
            existing is not None
            and existing.plan_type is PlanType.LIFETIME
            and existing.subscription_ref != subscription.id
        ):
            logger.info(
                "Account %s holds a lifetime plan; ignoring %s for subscription %s",
                account_id,
                event.type,
                subscription.id,
            )
            return EventOutcome.IGNORED, "lifetime plan retained"

        status_override = None
        if isinstance(event, SubscriptionDeleted) and map_status(subscription.status) is not SubscriptionStatus.EXPIRED:
            status_override = SubscriptionStatus.CANCELED

        plan = resolve_plan_type(self._settings, subscription, existing)
        record = await self.projector.upsert(
            account_id,
            subscription.customer,
            subscription,
            plan,
            event_created=event.created_at,
            status_override=status_override,
        )
        await self.entitlements.project_record(record)
        return EventOutcome.PROCESSED, f"subscription {record.status.value}"

    # ------------------------------------------------------------------
    # invoice.payment_failed
    # ------------------------------------------------------------------

    async def on_invoice_payment_failed(self, event: InvoicePaymentFailed, account_id: str) -> HandlerResult:
        record = await self.subscriptions.get(account_id)
        if record is None:
            logger.warning("Payment failure for account %s with no subscription record", account_id)
            return EventOutcome.IGNORED, "no subscription record"
        if record.plan_type is PlanType.LIFETIME:
            return EventOutcome.IGNORED, "lifetime plan retained"
        self._check_version(account_id, event.created_at, record.last_event_at)

        await self.subscriptions.set_status(account_id, SubscriptionStatus.PAST_DUE, event_created=event.created_at)
        await self.entitlements.project_record(record.model_copy(update={"status": SubscriptionStatus.PAST_DUE}))
        logger.info("Account %s marked past_due after invoice %s", account_id, event.data.obj.id)
        return EventOutcome.PROCESSED, "subscription past_due"

    # ------------------------------------------------------------------
    # subscription_schedule.*
    # ------------------------------------------------------------------

    async def on_schedule_changed(self, event: ScheduleUpdated | ScheduleCompleted, account_id: str) -> HandlerResult:
        flipped = await self.transitions.handle(event.type, event.data.obj, event.created_at)
        if flipped:
            return EventOutcome.PROCESSED, "plan moved to standard"
        return EventOutcome.PROCESSED, "no plan change"
