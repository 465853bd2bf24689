"""Repository classes providing access to the billing state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``;
the caller is responsible for committing.

Repositories speak in domain models (:class:`SubscriptionRecord`,
:class:`EntitlementProjection`) rather than ORM rows, so handlers never hold
identity-mapped rows across the per-account lock boundary.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.models.billing import (
    ENTITLEMENT_FIELDS,
    EntitlementProjection,
    EntitlementStatus,
    PlanType,
    SubscriptionRecord,
    SubscriptionStatus,
)
from billing_engine.state.tables import AccountProfileTable, PurchaseTable, SubscriptionTable

logger = logging.getLogger(__name__)


def _as_utc(value: datetime | None) -> datetime | None:
    """Re-attach UTC to naive datetimes returned by SQLite."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names to update when a conflict occurs.
    """
    stmt: Any
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: values[col] for col in update_columns},
        )
    return await session.execute(stmt)


async def _dialect_insert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``."""
    stmt: Any
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# SubscriptionRepository
# ---------------------------------------------------------------------------

# Columns overwritten when an event replays the full record.  ``promo_used``
# and ``external_schedule_id`` are deliberately absent: they are only ever
# written by the schedule orchestrator and compensator.
_SUBSCRIPTION_UPSERT_COLUMNS: list[str] = [
    "customer_ref",
    "subscription_ref",
    "price_ref",
    "plan_type",
    "status",
    "period_start",
    "period_end",
    "cancel_at_period_end",
    "last_event_at",
    "updated_at",
]


def _to_record(row: SubscriptionTable) -> SubscriptionRecord:
    return SubscriptionRecord(
        account_id=row.account_id,
        customer_ref=row.customer_ref,
        subscription_ref=row.subscription_ref,
        price_ref=row.price_ref,
        plan_type=PlanType(row.plan_type),
        status=SubscriptionStatus(row.status),
        period_start=_as_utc(row.period_start),  # type: ignore[arg-type]
        period_end=_as_utc(row.period_end),
        cancel_at_period_end=row.cancel_at_period_end,
        promo_used=row.promo_used,
        external_schedule_id=row.external_schedule_id,
        last_event_at=_as_utc(row.last_event_at),
    )


class SubscriptionRepository:
    """Account-keyed access to the ``subscriptions`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _fetch(self, *criteria: Any) -> SubscriptionRecord | None:
        stmt = select(SubscriptionTable).where(*criteria).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        return _to_record(row) if row is not None else None

    async def get(self, account_id: str) -> SubscriptionRecord | None:
        return await self._fetch(SubscriptionTable.account_id == account_id)

    async def get_by_schedule_id(self, schedule_id: str) -> SubscriptionRecord | None:
        return await self._fetch(SubscriptionTable.external_schedule_id == schedule_id)

    async def find_account_id(
        self,
        *,
        schedule_id: str | None = None,
        subscription_ref: str | None = None,
    ) -> str | None:
        """Resolve an account id from a remote schedule or subscription reference.

        Selects the key column only, so nothing is loaded into the identity map.
        """
        if schedule_id:
            result = await self._session.execute(
                select(SubscriptionTable.account_id).where(SubscriptionTable.external_schedule_id == schedule_id)
            )
            account_id = result.scalar_one_or_none()
            if account_id is not None:
                return account_id
        if subscription_ref:
            result = await self._session.execute(
                select(SubscriptionTable.account_id).where(SubscriptionTable.subscription_ref == subscription_ref)
            )
            return result.scalars().first()
        return None

    async def upsert(self, record: SubscriptionRecord) -> None:
        """Insert or overwrite the record keyed by ``account_id``.

        Last write wins.  ``promo_used`` and ``external_schedule_id`` are
        only set on first insert and are never reset by a replay.
        """
        now = datetime.now(UTC)
        values: dict[str, Any] = {
            "account_id": record.account_id,
            "customer_ref": record.customer_ref,
            "subscription_ref": record.subscription_ref,
            "price_ref": record.price_ref,
            "plan_type": record.plan_type.value,
            "status": record.status.value,
            "period_start": record.period_start,
            "period_end": record.period_end,
            "cancel_at_period_end": record.cancel_at_period_end,
            "promo_used": record.promo_used,
            "external_schedule_id": record.external_schedule_id,
            "last_event_at": record.last_event_at,
            "created_at": now,
            "updated_at": now,
        }
        await _dialect_upsert(
            self._session,
            SubscriptionTable,
            values=values,
            index_elements=["account_id"],
            update_columns=_SUBSCRIPTION_UPSERT_COLUMNS,
        )
        await self._session.flush()

    async def _update(self, account_id: str, **values: Any) -> bool:
        values["updated_at"] = datetime.now(UTC)
        stmt = update(SubscriptionTable).where(SubscriptionTable.account_id == account_id).values(**values)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def mark_promo_scheduled(self, account_id: str, schedule_id: str) -> bool:
        """Persist the attached schedule and consume the promotion."""
        return await self._update(account_id, external_schedule_id=schedule_id, promo_used=True)

    async def mark_promo_used(self, account_id: str) -> bool:
        """Consume the promotion without recording a schedule."""
        return await self._update(account_id, promo_used=True)

    async def _advanced_version(self, account_id: str, event_created: datetime) -> datetime:
        # Never move last_event_at backwards.
        stmt = select(SubscriptionTable.last_event_at).where(SubscriptionTable.account_id == account_id)
        stored = _as_utc((await self._session.execute(stmt)).scalar_one_or_none())
        if stored is not None and stored > event_created:
            return stored
        return event_created

    async def set_plan_type(
        self, account_id: str, plan_type: PlanType, *, event_created: datetime | None = None
    ) -> bool:
        values: dict[str, Any] = {"plan_type": plan_type.value}
        if event_created is not None:
            values["last_event_at"] = await self._advanced_version(account_id, event_created)
        return await self._update(account_id, **values)

    async def set_status(
        self, account_id: str, status: SubscriptionStatus, *, event_created: datetime | None = None
    ) -> bool:
        """Overwrite the status; *event_created* advances ``last_event_at``."""
        values: dict[str, Any] = {"status": status.value}
        if event_created is not None:
            values["last_event_at"] = await self._advanced_version(account_id, event_created)
        return await self._update(account_id, **values)

    async def refresh_remote_state(
        self,
        account_id: str,
        *,
        status: SubscriptionStatus,
        cancel_at_period_end: bool,
        period_end: datetime | None,
    ) -> bool:
        """Overwrite the fields the provider is authoritative for."""
        return await self._update(
            account_id,
            status=status.value,
            cancel_at_period_end=cancel_at_period_end,
            period_end=period_end,
        )


# ---------------------------------------------------------------------------
# ProfileRepository
# ---------------------------------------------------------------------------


def _to_projection(row: AccountProfileTable) -> EntitlementProjection:
    return EntitlementProjection(
        account_id=row.account_id,
        status=EntitlementStatus(row.status),
        plan_type=PlanType(row.plan_type) if row.plan_type else None,
        expires_at=_as_utc(row.expires_at),
        cancel_at_period_end=row.cancel_at_period_end,
        credit_count=row.credit_count,
        credit_granted_at=_as_utc(row.credit_granted_at),
        granted_by_admin=row.granted_by_admin,
    )


def _column_value(value: Any) -> Any:
    # Enum members are stored by value.
    return getattr(value, "value", value)


class ProfileRepository:
    """Entitlement columns of the ``account_profiles`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _row(self, account_id: str) -> AccountProfileTable | None:
        stmt = (
            select(AccountProfileTable)
            .where(AccountProfileTable.account_id == account_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_entitlement(self, account_id: str) -> EntitlementProjection | None:
        row = await self._row(account_id)
        return _to_projection(row) if row is not None else None

    async def find_account_id_by_email(self, email: str) -> str | None:
        """Case-insensitive email lookup."""
        stmt = select(AccountProfileTable.account_id).where(
            func.lower(AccountProfileTable.email) == email.strip().lower(),
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def ensure(self, account_id: str, *, email: str | None = None) -> None:
        """Create an empty (free) profile if none exists yet."""
        values: dict[str, Any] = {
            "account_id": account_id,
            "status": EntitlementStatus.FREE.value,
            "credit_count": 0,
            "cancel_at_period_end": False,
            "granted_by_admin": False,
            "updated_at": datetime.now(UTC),
        }
        if email is not None:
            values["email"] = email
        await _dialect_insert_nothing(self._session, AccountProfileTable, values, ["account_id"])

    async def merge_entitlement(self, account_id: str, fields: Mapping[str, Any]) -> EntitlementProjection:
        """Write only *fields*, leaving every other profile column untouched.

        Raises
        ------
        ValueError
            If *fields* names a column outside the entitlement projection.
        """
        unknown = set(fields) - ENTITLEMENT_FIELDS
        if unknown:
            raise ValueError(f"Not entitlement fields: {sorted(unknown)}")

        await self.ensure(account_id)
        if fields:
            values = {key: _column_value(value) for key, value in fields.items()}
            values["updated_at"] = datetime.now(UTC)
            await self._session.execute(
                update(AccountProfileTable).where(AccountProfileTable.account_id == account_id).values(**values)
            )
        await self._session.flush()
        projection = await self.get_entitlement(account_id)
        assert projection is not None
        return projection

    async def add_credits(self, account_id: str, amount: int, granted_at: datetime) -> EntitlementProjection:
        """Atomically increment the credit balance by *amount*."""
        if amount < 0:
            raise ValueError(f"credit amount must be >= 0, got {amount}")
        await self.ensure(account_id)
        await self._session.execute(
            update(AccountProfileTable)
            .where(AccountProfileTable.account_id == account_id)
            .values(
                credit_count=AccountProfileTable.credit_count + amount,
                credit_granted_at=granted_at,
                updated_at=datetime.now(UTC),
            )
        )
        await self._session.flush()
        projection = await self.get_entitlement(account_id)
        assert projection is not None
        return projection


# ---------------------------------------------------------------------------
# PurchaseRepository
# ---------------------------------------------------------------------------


class PurchaseRepository:
    """Idempotent ledger of one-time purchases."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        *,
        account_id: str,
        product_type: str,
        checkout_session_id: str,
        product_id: str | None = None,
        amount: int | None = None,
        currency: str | None = None,
    ) -> bool:
        """Insert a purchase keyed by checkout session id.

        Returns ``True`` if the purchase is new, ``False`` if the same
        checkout session was already recorded (redelivered event).
        """
        result = await _dialect_insert_nothing(
            self._session,
            PurchaseTable,
            values={
                "account_id": account_id,
                "product_type": product_type,
                "product_id": product_id or None,
                "amount": amount,
                "currency": currency,
                "checkout_session_id": checkout_session_id,
                "status": "completed",
                "created_at": datetime.now(UTC),
            },
            index_elements=["checkout_session_id"],
        )
        await self._session.flush()
        inserted = (result.rowcount or 0) > 0  # type: ignore[attr-defined]
        if not inserted:
            logger.info(
                "Purchase for checkout session %s already recorded; skipping",
                checkout_session_id,
            )
        return inserted

    async def list_for_account(self, account_id: str) -> list[dict[str, Any]]:
        stmt = (
            select(PurchaseTable)
            .where(PurchaseTable.account_id == account_id)
            .order_by(PurchaseTable.created_at.desc(), PurchaseTable.id.desc())
        )
        result = await self._session.execute(stmt)
        return [
            {
                "product_type": row.product_type,
                "product_id": row.product_id,
                "amount": row.amount,
                "currency": row.currency,
                "checkout_session_id": row.checkout_session_id,
                "status": row.status,
                "created_at": _as_utc(row.created_at),
            }
            for row in result.scalars().all()
        ]
