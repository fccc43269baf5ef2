"""Plan and entitlement models served by the entitlement catalog."""

from __future__ import annotations

from pydantic import BaseModel, Field

from billing_lifecycle.core.constants import BillingInterval


class FeatureEntitlement(BaseModel):
    """A metered feature included in a plan.

    Attributes:
        id: Feature identifier used by metering calls.
        included_units: Units included per period before overage applies.
        overage_rate: Price per unit beyond ``included_units``, in minor units.
    """

    id: str
    name: str = ""
    included_units: float = Field(default=0.0, ge=0.0)
    overage_rate: float = Field(default=0.0, ge=0.0)


class Plan(BaseModel):
    """Pricing configuration for a subscription plan.

    ``base_price`` is charged once per standard interval, in minor units.
    """

    id: str
    name: str = ""
    base_price: int = Field(ge=0)
    currency: str = "USD"
    interval: BillingInterval = BillingInterval.MONTH
    interval_count: int = Field(default=1, ge=1)
    trial_days: int = Field(default=0, ge=0)
    active: bool = True
    features: list[FeatureEntitlement] = Field(default_factory=list)

    def feature(self, feature_id: str) -> FeatureEntitlement | None:
        for entitlement in self.features:
            if entitlement.id == feature_id:
                return entitlement
        return None
