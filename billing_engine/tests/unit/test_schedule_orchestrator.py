"""Tests for billing_engine/schedule/

Covers:
- PhasedScheduleOrchestrator.attach: success, redelivery skip, step-1
  failure propagation, step-2 failure compensation
- FailureCompensator: degraded outcome, metric, structured log
- ScheduleTransitionHandler: phase detection and the one-way flip
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

import pytest
from prometheus_client import REGISTRY

from billing_engine.errors import TransientExternalError
from billing_engine.models.billing import (
    EntitlementStatus,
    OrchestrationStatus,
    PlanType,
    SubscriptionRecord,
    SubscriptionStatus,
)
from billing_engine.models.events import (
    SCHEDULE_COMPLETED,
    SCHEDULE_UPDATED,
    SubscriptionScheduleObject,
)
from billing_engine.projectors.entitlement import EntitlementProjector
from billing_engine.schedule import (
    FailureCompensator,
    PhasedScheduleOrchestrator,
    ScheduleTransitionHandler,
    active_phase_index,
)
from billing_engine.state.repository import ProfileRepository, SubscriptionRepository

_START = datetime(2024, 6, 1, tzinfo=UTC)
_END = datetime(2024, 7, 1, tzinfo=UTC)
_START_TS = int(_START.timestamp())
_WEEK = 604800


def _degraded_count() -> float:
    return REGISTRY.get_sample_value("billing_promotions_degraded_total") or 0.0


def _promo_record(**overrides) -> SubscriptionRecord:
    values = {
        "account_id": "acct-1",
        "customer_ref": "cus_123",
        "subscription_ref": "sub_123",
        "price_ref": "price_promo",
        "plan_type": PlanType.PROMO_INTRO,
        "status": SubscriptionStatus.ACTIVE,
        "period_start": _START,
        "period_end": _END,
    }
    values.update(overrides)
    return SubscriptionRecord(**values)


def _orchestrator(async_session, gateway, engine_settings) -> tuple[PhasedScheduleOrchestrator, SubscriptionRepository]:
    repo = SubscriptionRepository(async_session)
    return PhasedScheduleOrchestrator(gateway, repo, FailureCompensator(repo), engine_settings), repo


def _schedule(schedule_id: str = "sub_sched_1", status: str = "active") -> SubscriptionScheduleObject:
    return SubscriptionScheduleObject.model_validate(
        {
            "id": schedule_id,
            "subscription": "sub_123",
            "status": status,
            "phases": [
                {"start_date": _START_TS, "end_date": _START_TS + _WEEK, "items": [{"price": "price_promo"}]},
                {"start_date": _START_TS + _WEEK, "end_date": None, "items": [{"price": {"id": "price_standard"}}]},
            ],
        }
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class TestAttach:
    """Verify the two-step schedule attachment."""

    @pytest.mark.asyncio
    async def test_attaches_two_phase_schedule(self, async_session, gateway, engine_settings) -> None:
        orchestrator, repo = _orchestrator(async_session, gateway, engine_settings)
        await repo.upsert(_promo_record())

        outcome = await orchestrator.attach(_promo_record())

        assert outcome.status is OrchestrationStatus.COMPLETED
        assert outcome.schedule_id == "sub_sched_1"
        schedule_id, phases = gateway.schedule_updates[0]
        assert schedule_id == "sub_sched_1"
        assert phases[0]["items"] == [{"price": "price_promo", "quantity": 1}]
        assert phases[0]["start_date"] == _START_TS
        assert phases[0]["end_date"] - phases[0]["start_date"] == _WEEK
        assert phases[1]["items"] == [{"price": "price_standard", "quantity": 1}]
        assert phases[1]["start_date"] == phases[0]["end_date"]
        assert "end_date" not in phases[1]

        stored = await repo.get("acct-1")
        assert stored is not None
        assert stored.promo_used is True
        assert stored.external_schedule_id == "sub_sched_1"

    @pytest.mark.asyncio
    async def test_skips_when_promotion_already_used(self, async_session, gateway, engine_settings) -> None:
        orchestrator, _ = _orchestrator(async_session, gateway, engine_settings)

        outcome = await orchestrator.attach(_promo_record(promo_used=True))

        assert outcome.status is OrchestrationStatus.SKIPPED
        assert gateway.created_schedules == []

    @pytest.mark.asyncio
    async def test_skips_when_schedule_already_attached(self, async_session, gateway, engine_settings) -> None:
        orchestrator, _ = _orchestrator(async_session, gateway, engine_settings)

        outcome = await orchestrator.attach(_promo_record(external_schedule_id="sub_sched_9"))

        assert outcome.status is OrchestrationStatus.SKIPPED
        assert outcome.schedule_id == "sub_sched_9"
        assert gateway.created_schedules == []

    @pytest.mark.asyncio
    async def test_create_failure_propagates(self, async_session, gateway, engine_settings) -> None:
        orchestrator, repo = _orchestrator(async_session, gateway, engine_settings)
        await repo.upsert(_promo_record())
        gateway.fail_create = True

        with pytest.raises(TransientExternalError) as exc_info:
            await orchestrator.attach(_promo_record())

        assert exc_info.value.operation == "create_schedule"
        stored = await repo.get("acct-1")
        assert stored is not None
        assert stored.promo_used is False

    @pytest.mark.asyncio
    async def test_update_failure_is_compensated(self, async_session, gateway, engine_settings, caplog) -> None:
        orchestrator, repo = _orchestrator(async_session, gateway, engine_settings)
        await repo.upsert(_promo_record())
        gateway.fail_update = True
        before = _degraded_count()

        with caplog.at_level(logging.ERROR, logger="billing_engine.schedule.compensator"):
            outcome = await orchestrator.attach(_promo_record(), event_id="evt_9")

        assert outcome.status is OrchestrationStatus.DEGRADED
        assert outcome.schedule_id == "sub_sched_1"
        assert "update_schedule" in (outcome.reason or "")
        assert _degraded_count() == before + 1

        stored = await repo.get("acct-1")
        assert stored is not None
        assert stored.promo_used is True
        assert stored.external_schedule_id is None

        degraded = [r for r in caplog.records if hasattr(r, "billing")]
        assert degraded
        assert degraded[0].billing["account_id"] == "acct-1"
        assert degraded[0].billing["event_id"] == "evt_9"


# ---------------------------------------------------------------------------
# Transition handler
# ---------------------------------------------------------------------------


class TestActivePhaseIndex:
    def test_phase_detection(self) -> None:
        phases = _schedule().phases
        assert active_phase_index(phases, _START_TS - 1) is None
        assert active_phase_index(phases, _START_TS) == 0
        assert active_phase_index(phases, _START_TS + _WEEK - 1) == 0
        assert active_phase_index(phases, _START_TS + _WEEK) == 1
        assert active_phase_index(phases, _START_TS + 100 * _WEEK) == 1


class TestScheduleTransition:
    """Verify the one-way promotional → standard flip."""

    async def _setup(self, async_session, engine_settings, now: datetime):
        repo = SubscriptionRepository(async_session)
        await repo.upsert(_promo_record())
        await repo.mark_promo_scheduled("acct-1", "sub_sched_1")
        entitlements = EntitlementProjector(ProfileRepository(async_session), engine_settings)
        handler = ScheduleTransitionHandler(repo, entitlements, clock=lambda: now)
        return handler, repo

    @pytest.mark.asyncio
    async def test_update_during_first_phase_is_noop(self, async_session, engine_settings) -> None:
        now = datetime.fromtimestamp(_START_TS + 3600, tz=UTC)
        handler, repo = await self._setup(async_session, engine_settings, now)

        assert await handler.handle(SCHEDULE_UPDATED, _schedule()) is False

        stored = await repo.get("acct-1")
        assert stored is not None
        assert stored.plan_type is PlanType.PROMO_INTRO

    @pytest.mark.asyncio
    async def test_update_after_boundary_flips_plan(self, async_session, engine_settings) -> None:
        now = datetime.fromtimestamp(_START_TS + _WEEK + 1, tz=UTC)
        handler, repo = await self._setup(async_session, engine_settings, now)

        assert await handler.handle(SCHEDULE_UPDATED, _schedule()) is True

        stored = await repo.get("acct-1")
        assert stored is not None
        assert stored.plan_type is PlanType.STANDARD
        profile = await ProfileRepository(async_session).get_entitlement("acct-1")
        assert profile is not None
        assert profile.plan_type is PlanType.STANDARD
        assert profile.status is EntitlementStatus.PRO

    @pytest.mark.asyncio
    async def test_completion_flips_regardless_of_clock(self, async_session, engine_settings) -> None:
        now = datetime.fromtimestamp(_START_TS + 3600, tz=UTC)
        handler, repo = await self._setup(async_session, engine_settings, now)

        assert await handler.handle(SCHEDULE_COMPLETED, _schedule(status="completed")) is True

        stored = await repo.get("acct-1")
        assert stored is not None
        assert stored.plan_type is PlanType.STANDARD

    @pytest.mark.asyncio
    async def test_redelivery_after_flip_is_noop(self, async_session, engine_settings) -> None:
        now = datetime.fromtimestamp(_START_TS + _WEEK + 1, tz=UTC)
        handler, _ = await self._setup(async_session, engine_settings, now)

        assert await handler.handle(SCHEDULE_COMPLETED, _schedule()) is True
        assert await handler.handle(SCHEDULE_COMPLETED, _schedule()) is False

    @pytest.mark.asyncio
    async def test_unknown_schedule_is_noop(self, async_session, engine_settings) -> None:
        now = datetime.fromtimestamp(_START_TS + _WEEK + 1, tz=UTC)
        handler, repo = await self._setup(async_session, engine_settings, now)

        assert await handler.handle(SCHEDULE_COMPLETED, _schedule("sub_sched_other")) is False

        stored = await repo.get("acct-1")
        assert stored is not None
        assert stored.plan_type is PlanType.PROMO_INTRO
