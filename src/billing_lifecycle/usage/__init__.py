from billing_lifecycle.usage.meter import UsageMeter
from billing_lifecycle.usage.models import (
    FeatureUsage,
    UsageBand,
    UsageRecord,
    UsageSummary,
    default_usage_bands,
)

__all__ = [
    "FeatureUsage",
    "UsageBand",
    "UsageMeter",
    "UsageRecord",
    "UsageSummary",
    "default_usage_bands",
]
