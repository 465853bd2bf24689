"""Promotional price schedule: attachment, compensation and phase transition."""

from billing_engine.schedule.compensator import FailureCompensator
from billing_engine.schedule.orchestrator import PhasedScheduleOrchestrator
from billing_engine.schedule.transition import ScheduleTransitionHandler, active_phase_index

__all__ = [
    "FailureCompensator",
    "PhasedScheduleOrchestrator",
    "ScheduleTransitionHandler",
    "active_phase_index",
]
