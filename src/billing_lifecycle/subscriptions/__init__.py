from billing_lifecycle.subscriptions.machine import PeriodCloseResult, SubscriptionStateMachine
from billing_lifecycle.subscriptions.models import (
    SUBSCRIPTION_TRANSITIONS,
    StatusChange,
    Subscription,
)

__all__ = [
    "SUBSCRIPTION_TRANSITIONS",
    "PeriodCloseResult",
    "StatusChange",
    "Subscription",
    "SubscriptionStateMachine",
]
