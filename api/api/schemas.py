"""Shared Pydantic request and response models for API endpoints.

These schemas ensure that endpoint responses are validated and documented
in the OpenAPI schema.  Routers import from here to avoid duplication.
"""

from __future__ import annotations

from datetime import datetime

from billing_engine.models.billing import EntitlementProjection, SubscriptionRecord
from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Webhook schemas
# ---------------------------------------------------------------------------


class WebhookAckResponse(BaseModel):
    """Acknowledgement returned for every authenticated webhook delivery."""

    received: bool = True
    status: str
    event_id: str | None = None
    event_type: str | None = None
    detail: str | None = None


# ---------------------------------------------------------------------------
# Admin schemas
# ---------------------------------------------------------------------------


class GrantProRequest(BaseModel):
    """Request body for ``POST /admin/grant-pro``."""

    email: str = Field(..., min_length=3, max_length=320)
    report_credits: int = Field(default=6, ge=0, le=10_000)


class RevokeProRequest(BaseModel):
    """Request body for ``POST /admin/revoke-pro``."""

    email: str = Field(..., min_length=3, max_length=320)


class AccountEntitlementResponse(BaseModel):
    """Subscription record and entitlement of one account after an admin action."""

    account_id: str
    subscription: SubscriptionRecord | None = None
    entitlement: EntitlementProjection | None = None


class PurchaseResponse(BaseModel):
    product_type: str
    product_id: str | None = None
    amount: int | None = None
    currency: str | None = None
    checkout_session_id: str
    status: str
    created_at: datetime | None = None


class AccountBillingResponse(AccountEntitlementResponse):
    """Everything stored about an account's billing."""

    purchases: list[PurchaseResponse] = Field(default_factory=list)
    total_purchased_credits: int = 0
