"""Typed payment-provider events.

Each consumed event type is a distinct variant of the :data:`BillingEvent`
tagged union, discriminated by its ``type`` field.  Payloads are validated
at the ingress boundary; a payload that does not match the shape declared
for its type is rejected rather than coerced.

Only the fields the engine reads are modelled.  Unknown fields are ignored
so that provider API additions do not break parsing.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

# ---------------------------------------------------------------------------
# Event type tags
# ---------------------------------------------------------------------------

CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
SCHEDULE_UPDATED = "subscription_schedule.updated"
SCHEDULE_COMPLETED = "subscription_schedule.completed"

CONSUMED_EVENT_TYPES: frozenset[str] = frozenset(
    {
        CHECKOUT_SESSION_COMPLETED,
        SUBSCRIPTION_CREATED,
        SUBSCRIPTION_UPDATED,
        SUBSCRIPTION_DELETED,
        INVOICE_PAYMENT_FAILED,
        SCHEDULE_UPDATED,
        SCHEDULE_COMPLETED,
    }
)


class _ProviderObject(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# ---------------------------------------------------------------------------
# Provider objects
# ---------------------------------------------------------------------------


class PriceObject(_ProviderObject):
    id: str


class SubscriptionItemObject(_ProviderObject):
    price: PriceObject | None = None
    quantity: int | None = None
    current_period_start: int | None = None
    current_period_end: int | None = None


class SubscriptionItemList(_ProviderObject):
    data: list[SubscriptionItemObject] = Field(default_factory=list)


class SubscriptionObject(_ProviderObject):
    """A recurring subscription as reported by the provider."""

    id: str
    customer: str
    status: str
    current_period_start: int | None = None
    current_period_end: int | None = None
    start_date: int | None = None
    cancel_at_period_end: bool = False
    items: SubscriptionItemList = Field(default_factory=SubscriptionItemList)
    metadata: dict[str, str] = Field(default_factory=dict)
    schedule: str | None = None

    @field_validator("schedule", mode="before")
    @classmethod
    def _schedule_id(cls, value: object) -> object:
        # Expanded schedules arrive as objects; keep only the id.
        if isinstance(value, dict):
            return value.get("id")
        return value

    @property
    def first_item(self) -> SubscriptionItemObject | None:
        return self.items.data[0] if self.items.data else None

    @property
    def price_ref(self) -> str | None:
        item = self.first_item
        if item is None or item.price is None:
            return None
        return item.price.id


class CheckoutSessionObject(_ProviderObject):
    id: str
    mode: Literal["subscription", "payment", "setup"]
    customer: str | None = None
    subscription: str | None = None
    amount_total: int | None = None
    currency: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class SubscriptionDetails(_ProviderObject):
    metadata: dict[str, str] = Field(default_factory=dict)
    subscription: str | None = None


class InvoiceParent(_ProviderObject):
    subscription_details: SubscriptionDetails | None = None


class InvoiceObject(_ProviderObject):
    id: str
    customer: str | None = None
    subscription: str | None = None
    subscription_details: SubscriptionDetails | None = None
    parent: InvoiceParent | None = None

    @property
    def account_metadata(self) -> dict[str, str]:
        """Subscription metadata copied onto the invoice, across API versions."""
        if self.subscription_details is not None and self.subscription_details.metadata:
            return self.subscription_details.metadata
        if self.parent is not None and self.parent.subscription_details is not None:
            return self.parent.subscription_details.metadata
        return {}

    @property
    def subscription_ref(self) -> str | None:
        if self.subscription:
            return self.subscription
        if self.parent is not None and self.parent.subscription_details is not None:
            return self.parent.subscription_details.subscription
        return None


class SchedulePhaseItem(_ProviderObject):
    price: str

    @field_validator("price", mode="before")
    @classmethod
    def _price_id(cls, value: object) -> object:
        if isinstance(value, dict):
            return value.get("id")
        return value


class SchedulePhaseObject(_ProviderObject):
    start_date: int
    end_date: int | None = None
    items: list[SchedulePhaseItem] = Field(default_factory=list)


class SubscriptionScheduleObject(_ProviderObject):
    id: str
    subscription: str | None = None
    status: str | None = None
    phases: list[SchedulePhaseObject] = Field(default_factory=list)

    @field_validator("subscription", mode="before")
    @classmethod
    def _subscription_id(cls, value: object) -> object:
        if isinstance(value, dict):
            return value.get("id")
        return value


# ---------------------------------------------------------------------------
# Event envelopes
# ---------------------------------------------------------------------------


class _EventBase(_ProviderObject):
    id: str
    created: int

    @property
    def created_at(self) -> datetime:
        return datetime.fromtimestamp(self.created, tz=UTC)


class CheckoutSessionData(_ProviderObject):
    obj: CheckoutSessionObject = Field(alias="object")


class SubscriptionData(_ProviderObject):
    obj: SubscriptionObject = Field(alias="object")


class InvoiceData(_ProviderObject):
    obj: InvoiceObject = Field(alias="object")


class ScheduleData(_ProviderObject):
    obj: SubscriptionScheduleObject = Field(alias="object")


class CheckoutSessionCompleted(_EventBase):
    type: Literal["checkout.session.completed"]
    data: CheckoutSessionData


class SubscriptionCreated(_EventBase):
    type: Literal["customer.subscription.created"]
    data: SubscriptionData


class SubscriptionUpdated(_EventBase):
    type: Literal["customer.subscription.updated"]
    data: SubscriptionData


class SubscriptionDeleted(_EventBase):
    type: Literal["customer.subscription.deleted"]
    data: SubscriptionData


class InvoicePaymentFailed(_EventBase):
    type: Literal["invoice.payment_failed"]
    data: InvoiceData


class ScheduleUpdated(_EventBase):
    type: Literal["subscription_schedule.updated"]
    data: ScheduleData


class ScheduleCompleted(_EventBase):
    type: Literal["subscription_schedule.completed"]
    data: ScheduleData


class UnrecognizedEvent(_ProviderObject):
    """An authentic event whose type this engine does not consume."""

    id: str | None = None
    type: str = ""


SubscriptionEvent = SubscriptionCreated | SubscriptionUpdated | SubscriptionDeleted
ScheduleEvent = ScheduleUpdated | ScheduleCompleted

BillingEvent = Annotated[
    CheckoutSessionCompleted
    | SubscriptionCreated
    | SubscriptionUpdated
    | SubscriptionDeleted
    | InvoicePaymentFailed
    | ScheduleUpdated
    | ScheduleCompleted,
    Field(discriminator="type"),
]

BILLING_EVENT_ADAPTER: TypeAdapter[BillingEvent] = TypeAdapter(BillingEvent)
