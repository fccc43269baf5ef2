"""Usage data models: metered records, threshold bands and summaries."""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field

from billing_lifecycle.core.constants import UsageLevel


class UsageRecord(BaseModel):
    """A single metered event. Immutable once written."""

    model_config = ConfigDict(frozen=True)

    record_id: str = Field(default_factory=lambda: uuid4().hex[:16])
    subscription_id: str
    feature_id: str
    quantity: float
    timestamp: AwareDatetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class UsageBand(BaseModel):
    """Inclusive lower bound (as a ratio of included units) for a level."""

    level: UsageLevel
    min_ratio: float = Field(ge=0.0)


def default_usage_bands() -> list[UsageBand]:
    return [
        UsageBand(level=UsageLevel.EXCEEDED, min_ratio=1.0),
        UsageBand(level=UsageLevel.CRITICAL, min_ratio=0.9),
        UsageBand(level=UsageLevel.WARNING, min_ratio=0.75),
        UsageBand(level=UsageLevel.ATTENTION, min_ratio=0.5),
    ]


class FeatureUsage(BaseModel):
    """Consumption of one feature over one period."""

    feature_id: str
    period_start: datetime
    period_end: datetime
    consumption: float
    included_units: float
    remaining: float
    overage: float
    overage_rate: float
    level: UsageLevel

    @property
    def overage_amount(self) -> float:
        return self.overage * self.overage_rate


class UsageSummary(BaseModel):
    """Per-feature usage for a subscription's current period."""

    subscription_id: str
    period_start: datetime
    period_end: datetime
    features: list[FeatureUsage] = Field(default_factory=list)

    @property
    def total_overage_amount(self) -> float:
        return sum(f.overage_amount for f in self.features)
