from __future__ import annotations

from collections.abc import Iterable
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Protocol, runtime_checkable

from billing_lifecycle.collection.models import PaymentAttempt
from billing_lifecycle.core.constants import InvoiceStatus, SubscriptionStatus
from billing_lifecycle.invoicing.models import Invoice
from billing_lifecycle.reconciliation.models import ReconciliationResult
from billing_lifecycle.subscriptions.models import Subscription
from billing_lifecycle.usage.models import UsageRecord


@runtime_checkable
class BillingStore(Protocol):
    """Structural type for the persistence collaborator.

    Every component takes this Protocol, so a relational adapter, the
    in-memory store and the retrying wrapper are interchangeable. Reads
    return copies; mutating a returned model never changes stored state
    until it is saved.

    ``serialized(subscription_id)`` is the per-subscription single-writer
    primitive. Transitions, invoice finalization and attempt creation all
    run inside it.
    """

    def serialized(self, subscription_id: str) -> AbstractAsyncContextManager[None]: ...

    # Subscriptions
    async def get_subscription(self, subscription_id: str) -> Subscription | None: ...

    async def find_subscription_by_processor_ref(
        self, processor_subscription_ref: str
    ) -> Subscription | None: ...

    async def list_subscriptions(
        self,
        *,
        organization_id: str | None = None,
        statuses: Iterable[SubscriptionStatus] | None = None,
    ) -> list[Subscription]: ...

    async def save_subscription(self, subscription: Subscription) -> None: ...

    # Invoices
    async def get_invoice(self, invoice_id: str) -> Invoice | None: ...

    async def list_invoices(
        self,
        *,
        subscription_id: str | None = None,
        statuses: Iterable[InvoiceStatus] | None = None,
    ) -> list[Invoice]: ...

    async def save_invoice(self, invoice: Invoice) -> None: ...

    # Payment attempts
    async def list_attempts(self, invoice_id: str) -> list[PaymentAttempt]: ...

    async def list_due_attempts(self, now: datetime) -> list[PaymentAttempt]: ...

    async def save_attempt(self, attempt: PaymentAttempt) -> None: ...

    # Usage. append_usage raises UsagePeriodClosed for a record timestamped
    # before the closed-through boundary, atomically with the append.
    async def append_usage(self, record: UsageRecord) -> None: ...

    async def list_usage(
        self,
        subscription_id: str,
        feature_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[UsageRecord]: ...

    async def get_usage_closed_through(self, subscription_id: str) -> datetime | None: ...

    async def close_usage_period(self, subscription_id: str, through: datetime) -> None: ...

    async def mark_threshold_notified(self, key: str) -> bool: ...

    # Processed processor events
    async def get_processed_event(self, idempotency_key: str) -> ReconciliationResult | None: ...

    async def record_processed_event(self, result: ReconciliationResult) -> None: ...
