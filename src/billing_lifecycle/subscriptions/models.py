"""Subscription data models and the allowed status graph."""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

from billing_lifecycle.core.constants import SubscriptionStatus
from billing_lifecycle.invoicing.models import LineItem

_S = SubscriptionStatus

# Explicit transitions only. Anything missing raises InvalidTransition.
SUBSCRIPTION_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    _S.TRIALING: frozenset({_S.ACTIVE, _S.CANCELED}),
    _S.ACTIVE: frozenset({_S.PAST_DUE, _S.PAUSED, _S.CANCELED}),
    _S.PAST_DUE: frozenset({_S.ACTIVE, _S.PAUSED, _S.CANCELED}),
    _S.PAUSED: frozenset({_S.ACTIVE}),
    _S.CANCELED: frozenset(),
}


class StatusChange(BaseModel):
    """One entry of a subscription's audit history."""

    from_status: SubscriptionStatus | None
    to_status: SubscriptionStatus
    at: datetime
    reason: str = ""


class Subscription(BaseModel):
    """One billing relationship between an organization and a plan."""

    subscription_id: str = Field(default_factory=lambda: f"sub_{uuid4().hex[:12]}")
    organization_id: str
    plan_id: str
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    trial_end: datetime | None = None
    pause_until: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    cancellation_reason: str | None = None
    processor_subscription_ref: str | None = None
    payment_instrument_ref: str | None = None
    instrument_updated_at: datetime | None = None
    jurisdiction: str | None = None
    pending_adjustments: list[LineItem] = Field(default_factory=list)
    """Proration lines waiting for the next period-close invoice."""
    history: list[StatusChange] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def _check_period(self) -> Subscription:
        if self.current_period_end <= self.current_period_start:
            raise ValueError("current_period_end must be after current_period_start")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def can_transition_to(self, target: SubscriptionStatus) -> bool:
        return target in SUBSCRIPTION_TRANSITIONS[self.status]
