"""Dunning decisions and derived dunning state."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from billing_lifecycle.collection.models import PaymentAttempt
from billing_lifecycle.core.constants import DunningAction, RiskTier


class DunningDecision(BaseModel):
    """What the scheduler decided after a failed attempt."""

    action: DunningAction
    invoice_id: str
    failed_attempt_number: int = 0
    failure_reason: str | None = None
    risk_tier: RiskTier | None = None
    strategy: str | None = None
    next_attempt: PaymentAttempt | None = None
    requires_new_instrument: bool = False
    notification_template: str | None = None

    @property
    def next_retry_at(self) -> datetime | None:
        return self.next_attempt.scheduled_for if self.next_attempt else None


class DunningState(BaseModel):
    """Dunning progress of one invoice, computed from its attempts."""

    invoice_id: str
    attempts_so_far: int
    failed_attempts: int
    risk_tier: RiskTier | None = None
    strategy: str | None = None
    next_retry_at: datetime | None = None
    requires_new_instrument: bool = False
    awaiting_instrument: bool = False
    exhausted: bool = False
