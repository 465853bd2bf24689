"""Billing engine configuration loaded from environment variables."""

from __future__ import annotations

import logging

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from billing_engine.models.billing import PROMO_PHASE_SECONDS, PlanType, ProductType

logger = logging.getLogger(__name__)


def _default_credit_grants() -> dict[str, int]:
    return {
        PlanType.ANNUAL.value: 2,
        PlanType.LIFETIME.value: 6,
        ProductType.REPORT.value: 1,
        ProductType.REPORT_BUNDLE_3.value: 3,
        ProductType.REPORT_BUNDLE_6.value: 6,
    }


class BillingEngineSettings(BaseSettings):
    """Settings with ``BILLING_`` prefix (e.g. ``BILLING_PRICE_STANDARD``)."""

    model_config = SettingsConfigDict(
        env_prefix="BILLING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # External price references, used to resolve the plan of a billed item
    # and as the second phase of the promotional schedule.
    price_standard: str = ""
    price_promo_intro: str = ""
    price_annual: str = ""
    price_lifetime: str = ""

    promo_phase_seconds: int = PROMO_PHASE_SECONDS

    # Reject events older than the version stored on the subscription record.
    # Per-account serialization is always applied regardless of this flag.
    reject_stale_events: bool = False

    # One-time credit grants keyed by plan type or product type.
    credit_grants: dict[str, int] = Field(default_factory=_default_credit_grants)

    @field_validator("promo_phase_seconds")
    @classmethod
    def _fixed_promo_phase(cls, value: int) -> int:
        if value != PROMO_PHASE_SECONDS:
            raise ValueError(f"promo_phase_seconds is fixed at {PROMO_PHASE_SECONDS}, got {value}")
        return value

    @field_validator("credit_grants")
    @classmethod
    def _non_negative_grants(cls, value: dict[str, int]) -> dict[str, int]:
        for key, amount in value.items():
            if amount < 0:
                raise ValueError(f"credit grant for {key!r} must be >= 0, got {amount}")
        return value

    def plan_for_price(self, price_ref: str | None) -> PlanType | None:
        """Map a configured price reference to its plan type."""
        if not price_ref:
            return None
        table: dict[str, PlanType] = {}
        for plan, configured in (
            (PlanType.STANDARD, self.price_standard),
            (PlanType.PROMO_INTRO, self.price_promo_intro),
            (PlanType.ANNUAL, self.price_annual),
            (PlanType.LIFETIME, self.price_lifetime),
        ):
            if configured:
                table[configured] = plan
        return table.get(price_ref)


def load_engine_settings() -> BillingEngineSettings:
    """Construct settings from the environment / ``.env`` file."""
    return BillingEngineSettings()
