"""Payment attempt models."""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from pydantic import BaseModel, Field

from billing_lifecycle.core.constants import AttemptOutcome, RiskTier


class PaymentAttempt(BaseModel):
    """One attempt to collect an invoice amount.

    Attempt numbers are 1-based, gapless and strictly increasing per
    invoice. ``(invoice_id, attempt_number)`` is the idempotency key sent to
    the payment processor.
    """

    attempt_id: str = Field(default_factory=lambda: f"pa_{uuid4().hex[:12]}")
    invoice_id: str
    subscription_id: str
    attempt_number: int = Field(ge=1)
    outcome: AttemptOutcome
    amount: int = 0
    currency: str = "USD"
    instrument_ref: str | None = None
    processor_ref: str | None = None
    failure_reason: str | None = None
    risk_tier: RiskTier | None = None
    strategy: str | None = None
    scheduled_for: datetime | None = None
    attempted_at: datetime | None = None
    completed_at: datetime | None = None
    next_retry_at: datetime | None = None
    requires_new_instrument: bool = False
    awaiting_instrument: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def idempotency_key(self) -> str:
        return f"{self.invoice_id}:{self.attempt_number}"
