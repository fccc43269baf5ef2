from billing_lifecycle.storage.base import BillingStore
from billing_lifecycle.storage.memory import InMemoryBillingStore
from billing_lifecycle.storage.retrying import RetryingBillingStore

__all__ = ["BillingStore", "InMemoryBillingStore", "RetryingBillingStore"]
