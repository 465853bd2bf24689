"""Outbound calls to the payment provider.

:class:`PaymentGateway` is the seam the engine depends on; handlers receive
an implementation by injection.  :class:`StripeGateway` is the production
implementation.  Every call is single-attempt: provider failures surface as
:class:`~billing_engine.errors.TransientExternalError` and redelivery is left
to the provider's own retry policy.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from pydantic import ValidationError

from billing_engine.errors import TransientExternalError
from billing_engine.models.events import SubscriptionObject

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    """Protocol for the remote operations the engine performs."""

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionObject:
        """Fetch the current state of a subscription."""
        ...

    async def create_schedule_from_subscription(self, subscription_id: str) -> str:
        """Create a schedule inheriting the subscription's current phase; return its id."""
        ...

    async def update_schedule(self, schedule_id: str, phases: list[dict[str, Any]]) -> None:
        """Replace the phases of an existing schedule."""
        ...


class StripeGateway:
    """:class:`PaymentGateway` backed by the Stripe API.

    Parameters
    ----------
    api_key:
        Stripe secret key.
    """

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

    def _get_stripe(self) -> Any:
        """Lazily import and configure the Stripe library."""
        import stripe

        stripe.api_key = self._api_key
        return stripe

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionObject:
        stripe = self._get_stripe()
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as exc:
            raise TransientExternalError("retrieve_subscription", str(exc)) from exc

        try:
            return SubscriptionObject.model_validate(subscription)
        except ValidationError as exc:
            raise TransientExternalError("retrieve_subscription", f"unexpected payload: {exc}") from exc

    async def create_schedule_from_subscription(self, subscription_id: str) -> str:
        stripe = self._get_stripe()
        try:
            schedule = stripe.SubscriptionSchedule.create(from_subscription=subscription_id)
        except stripe.StripeError as exc:
            raise TransientExternalError("create_schedule", str(exc)) from exc
        logger.info("Created schedule %s from subscription %s", schedule["id"], subscription_id)
        return str(schedule["id"])

    async def update_schedule(self, schedule_id: str, phases: list[dict[str, Any]]) -> None:
        stripe = self._get_stripe()
        try:
            stripe.SubscriptionSchedule.modify(
                schedule_id,
                phases=phases,
                end_behavior="release",
            )
        except stripe.StripeError as exc:
            raise TransientExternalError("update_schedule", str(exc)) from exc
        logger.info("Configured %d phase(s) on schedule %s", len(phases), schedule_id)
