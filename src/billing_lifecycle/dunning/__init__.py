from billing_lifecycle.dunning.models import DunningDecision, DunningState
from billing_lifecycle.dunning.policy import (
    AGGRESSIVE_STRATEGY,
    CONSERVATIVE_STRATEGY,
    DEFAULT_STRATEGY,
    DunningPolicy,
    NotificationStep,
    RetryStrategy,
)
from billing_lifecycle.dunning.scheduler import DunningScheduler

__all__ = [
    "AGGRESSIVE_STRATEGY",
    "CONSERVATIVE_STRATEGY",
    "DEFAULT_STRATEGY",
    "DunningDecision",
    "DunningPolicy",
    "DunningScheduler",
    "DunningState",
    "NotificationStep",
    "RetryStrategy",
]
