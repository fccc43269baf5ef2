from billing_lifecycle.catalog.catalog import EntitlementCatalog, InMemoryEntitlementCatalog
from billing_lifecycle.catalog.models import FeatureEntitlement, Plan

__all__ = [
    "EntitlementCatalog",
    "FeatureEntitlement",
    "InMemoryEntitlementCatalog",
    "Plan",
]
