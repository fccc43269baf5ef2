"""Dunning policy data: risk classification, retry strategies, notification steps.

Everything here is configuration. :class:`DunningPolicy` ships with the
product defaults but any field can be replaced through
:class:`~billing_lifecycle.core.config.EngineConfig` without code changes.
"""

from __future__ import annotations

from datetime import timedelta

from pydantic import BaseModel, Field, model_validator

from billing_lifecycle.core.constants import NotificationChannel, RiskTier


class RetryStrategy(BaseModel):
    """How many times to retry and how long to wait between attempts.

    Attributes:
        name: Human-readable label (``"DEFAULT"``, ``"AGGRESSIVE"`` ...).
        max_attempts: Total attempts allowed for one invoice, including the
            first collection attempt.
        intervals_hours: Delay after failed attempt *n* is
            ``intervals_hours[n - 1]``; the last entry repeats when the list
            is shorter than ``max_attempts - 1``.
        require_new_instrument: Whether a retry must wait until the customer
            supplies a new payment instrument.
    """

    name: str
    max_attempts: int = Field(ge=1)
    intervals_hours: list[float] = Field(default_factory=list)
    require_new_instrument: bool = False

    def delay_after(self, attempt_number: int) -> timedelta:
        """Return the wait after failed attempt *attempt_number* (1-based)."""
        if not self.intervals_hours:
            return timedelta(0)
        index = min(max(attempt_number, 1) - 1, len(self.intervals_hours) - 1)
        return timedelta(hours=self.intervals_hours[index])


class NotificationStep(BaseModel):
    """Template to use once an invoice is at least ``days_past_due`` late."""

    days_past_due: int = Field(ge=0)
    template: str


DEFAULT_STRATEGY = RetryStrategy(
    name="DEFAULT",
    max_attempts=4,
    intervals_hours=[24, 72, 168],
)
AGGRESSIVE_STRATEGY = RetryStrategy(
    name="AGGRESSIVE",
    max_attempts=6,
    intervals_hours=[3, 24, 72, 168, 336],
    require_new_instrument=True,
)
CONSERVATIVE_STRATEGY = RetryStrategy(
    name="CONSERVATIVE",
    max_attempts=3,
    intervals_hours=[72, 168],
    require_new_instrument=True,
)


def _default_strategies() -> dict[RiskTier, RetryStrategy]:
    return {
        RiskTier.LOW: DEFAULT_STRATEGY.model_copy(),
        RiskTier.MEDIUM: AGGRESSIVE_STRATEGY.model_copy(),
        RiskTier.HIGH: CONSERVATIVE_STRATEGY.model_copy(),
    }


def _default_steps() -> list[NotificationStep]:
    return [
        NotificationStep(days_past_due=0, template="payment_failed_first_attempt"),
        NotificationStep(days_past_due=3, template="payment_failed_second_attempt"),
        NotificationStep(days_past_due=7, template="payment_failed_final_warning"),
    ]


class DunningPolicy(BaseModel):
    """Reason-code table, per-tier strategies and notification templates."""

    high_risk_reasons: list[str] = Field(
        default_factory=lambda: [
            "fraudulent",
            "stolen_card",
            "lost_card",
            "pickup_card",
            "invalid_card",
            "restricted_card",
        ]
    )
    medium_risk_reasons: list[str] = Field(
        default_factory=lambda: [
            "insufficient_funds",
            "processing_error",
            "expired_card",
            "timeout",
            "card_velocity_exceeded",
        ]
    )
    strategies: dict[RiskTier, RetryStrategy] = Field(default_factory=_default_strategies)
    steps: list[NotificationStep] = Field(default_factory=_default_steps)
    update_instrument_template: str = "payment_method_update_required"
    exhausted_template: str = "subscription_canceled_nonpayment"
    recovered_template: str = "payment_recovered"
    channels: list[NotificationChannel] = Field(
        default_factory=lambda: [NotificationChannel.EMAIL, NotificationChannel.IN_APP]
    )

    @model_validator(mode="after")
    def _check_tiers(self) -> DunningPolicy:
        missing = [tier.value for tier in RiskTier if tier not in self.strategies]
        if missing:
            raise ValueError(f"dunning policy has no strategy for tiers: {missing}")
        return self

    def classify(self, reason: str | None) -> RiskTier:
        """Map a processor failure reason onto a risk tier.

        Matching is case-insensitive and substring based so composite codes
        such as ``"card_declined:insufficient_funds"`` still classify. HIGH
        wins over MEDIUM when a reason matches both.
        """
        normalized = (reason or "").strip().lower()
        if not normalized:
            return RiskTier.LOW
        if any(code in normalized for code in self.high_risk_reasons):
            return RiskTier.HIGH
        if any(code in normalized for code in self.medium_risk_reasons):
            return RiskTier.MEDIUM
        return RiskTier.LOW

    def strategy_for(self, tier: RiskTier) -> RetryStrategy:
        return self.strategies[tier]

    def template_for(self, days_past_due: int) -> str:
        """Return the template of the latest step reached by *days_past_due*."""
        reached = [s for s in self.steps if days_past_due >= s.days_past_due]
        if not reached:
            return self.steps[0].template if self.steps else "payment_failed"
        return max(reached, key=lambda s: s.days_past_due).template
