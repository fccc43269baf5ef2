"""Subscription billing lifecycle engine: metering, invoicing, collection and dunning."""

from billing_lifecycle.__version__ import __version__

from billing_lifecycle.catalog import (
    EntitlementCatalog,
    FeatureEntitlement,
    InMemoryEntitlementCatalog,
    Plan,
)
from billing_lifecycle.collection import PaymentAttempt, PaymentCollector
from billing_lifecycle.core.config import EngineConfig
from billing_lifecycle.core.constants import (
    AttemptOutcome,
    BillingInterval,
    DunningAction,
    InvoiceStatus,
    LineItemKind,
    NotificationChannel,
    ReconciliationStatus,
    RiskTier,
    SubscriptionStatus,
    UsageLevel,
)
from billing_lifecycle.core.engine import BillingEngine, ProcessDueReport
from billing_lifecycle.core.exceptions import (
    AlreadyFinalized,
    AttemptInFlight,
    BillingLifecycleError,
    ConfigurationError,
    DuplicateSubscription,
    InvalidInvoiceTransition,
    InvalidPauseDuration,
    InvalidPeriod,
    InvalidTimestamp,
    InvalidQuantity,
    InvalidTransition,
    InvoiceNotFound,
    NoActivePlan,
    NotFoundError,
    PersistenceUnavailable,
    ProcessorError,
    StateConflictError,
    SubscriptionNotFound,
    UnknownFeature,
    UsagePeriodClosed,
    ValidationError,
)
from billing_lifecycle.dunning import (
    DunningDecision,
    DunningPolicy,
    DunningScheduler,
    DunningState,
    RetryStrategy,
)
from billing_lifecycle.invoicing import Invoice, InvoiceBuilder, LineItem
from billing_lifecycle.notifications import (
    InMemoryNotificationSink,
    LogNotificationSink,
    NotificationRequest,
    NotificationSink,
    Notifier,
    WebhookNotificationSink,
)
from billing_lifecycle.processor import (
    ChargeResult,
    ChargeStatus,
    HttpPaymentProcessor,
    MockPaymentProcessor,
    PaymentProcessor,
    ProcessorConfig,
)
from billing_lifecycle.reconciliation import (
    EventReconciler,
    ProcessorEvent,
    ReconciliationResult,
    parse_processor_event,
)
from billing_lifecycle.storage import BillingStore, InMemoryBillingStore, RetryingBillingStore
from billing_lifecycle.subscriptions import (
    PeriodCloseResult,
    Subscription,
    SubscriptionStateMachine,
)
from billing_lifecycle.tax import StaticTaxRateProvider, TaxRate, TaxRateProvider
from billing_lifecycle.usage import UsageMeter, UsageRecord, UsageSummary

__all__ = [
    "__version__",
    "BillingEngine",
    "EngineConfig",
    "ProcessDueReport",
    # Constants
    "AttemptOutcome",
    "BillingInterval",
    "DunningAction",
    "InvoiceStatus",
    "LineItemKind",
    "NotificationChannel",
    "ReconciliationStatus",
    "RiskTier",
    "SubscriptionStatus",
    "UsageLevel",
    # Errors
    "BillingLifecycleError",
    "ConfigurationError",
    "ValidationError",
    "InvalidQuantity",
    "UnknownFeature",
    "InvalidPauseDuration",
    "InvalidPeriod",
    "InvalidTimestamp",
    "StateConflictError",
    "InvalidTransition",
    "InvalidInvoiceTransition",
    "AlreadyFinalized",
    "DuplicateSubscription",
    "UsagePeriodClosed",
    "AttemptInFlight",
    "NotFoundError",
    "SubscriptionNotFound",
    "InvoiceNotFound",
    "NoActivePlan",
    "PersistenceUnavailable",
    "ProcessorError",
    # Catalog
    "EntitlementCatalog",
    "InMemoryEntitlementCatalog",
    "Plan",
    "FeatureEntitlement",
    # Usage
    "UsageMeter",
    "UsageRecord",
    "UsageSummary",
    # Invoicing
    "Invoice",
    "InvoiceBuilder",
    "LineItem",
    # Collection
    "PaymentAttempt",
    "PaymentCollector",
    # Dunning
    "DunningDecision",
    "DunningPolicy",
    "DunningScheduler",
    "DunningState",
    "RetryStrategy",
    # Subscriptions
    "PeriodCloseResult",
    "Subscription",
    "SubscriptionStateMachine",
    # Reconciliation
    "EventReconciler",
    "ProcessorEvent",
    "ReconciliationResult",
    "parse_processor_event",
    # Collaborators
    "BillingStore",
    "InMemoryBillingStore",
    "RetryingBillingStore",
    "ChargeResult",
    "ChargeStatus",
    "PaymentProcessor",
    "HttpPaymentProcessor",
    "MockPaymentProcessor",
    "ProcessorConfig",
    "NotificationRequest",
    "NotificationSink",
    "Notifier",
    "LogNotificationSink",
    "InMemoryNotificationSink",
    "WebhookNotificationSink",
    "TaxRate",
    "TaxRateProvider",
    "StaticTaxRateProvider",
]
