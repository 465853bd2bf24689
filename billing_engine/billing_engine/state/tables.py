"""SQLAlchemy 2.0 ORM table definitions for the billing state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for ``create_all`` in dev mode and for
the repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all billing tables."""


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class SubscriptionTable(Base):
    """One subscription record per account.

    Rows are never deleted; cancellation sets ``status`` instead.
    ``promo_used`` only ever moves from false to true.
    """

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    customer_ref: Mapped[str] = mapped_column(String(256), nullable=False)
    subscription_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    price_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    plan_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    promo_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    external_schedule_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    last_event_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "(period_end IS NULL) = (plan_type = 'lifetime')",
            name="ck_subscriptions_lifetime_period_end",
        ),
        Index("ix_subscriptions_schedule", "external_schedule_id"),
        Index("ix_subscriptions_subscription_ref", "subscription_ref"),
    )


# ---------------------------------------------------------------------------
# Account profiles (entitlement projection)
# ---------------------------------------------------------------------------


class AccountProfileTable(Base):
    """Account profile carrying the embedded entitlement projection.

    Only the entitlement columns are written by the billing engine; the rest
    of the profile belongs to the account service.
    """

    __tablename__ = "account_profiles"

    account_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True, unique=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="free")
    plan_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    credit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credit_granted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    granted_by_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (CheckConstraint("credit_count >= 0", name="ck_account_profiles_credit_count"),)


# ---------------------------------------------------------------------------
# One-time purchases
# ---------------------------------------------------------------------------


class PurchaseTable(Base):
    """Non-recurring purchases, one row per completed checkout session."""

    __tablename__ = "purchases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(128), nullable=False)
    product_type: Mapped[str] = mapped_column(String(32), nullable=False)
    product_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    currency: Mapped[str | None] = mapped_column(String(8), nullable=True)
    checkout_session_id: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="completed")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_purchases_account", "account_id"),)
