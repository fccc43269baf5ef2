from billing_lifecycle.reconciliation.models import (
    KNOWN_EVENT_TYPES,
    ChargeFailed,
    ChargeSucceeded,
    PaymentMethodAttached,
    ProcessorEvent,
    ReconciliationResult,
    SubscriptionDeleted,
    SubscriptionUpdated,
    UnknownEventData,
    parse_processor_event,
)
from billing_lifecycle.reconciliation.reconciler import EventReconciler

__all__ = [
    "KNOWN_EVENT_TYPES",
    "ChargeFailed",
    "ChargeSucceeded",
    "EventReconciler",
    "PaymentMethodAttached",
    "ProcessorEvent",
    "ReconciliationResult",
    "SubscriptionDeleted",
    "SubscriptionUpdated",
    "UnknownEventData",
    "parse_processor_event",
]
