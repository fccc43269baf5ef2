"""Store wrapper that retries reads a bounded number of times."""

from __future__ import annotations

from collections.abc import Iterable
from contextlib import AbstractAsyncContextManager
from datetime import datetime

from billing_lifecycle.collection.models import PaymentAttempt
from billing_lifecycle.core.constants import InvoiceStatus, SubscriptionStatus
from billing_lifecycle.invoicing.models import Invoice
from billing_lifecycle.reconciliation.models import ReconciliationResult
from billing_lifecycle.resilience.retry import RetryPolicy
from billing_lifecycle.storage.base import BillingStore
from billing_lifecycle.subscriptions.models import Subscription
from billing_lifecycle.usage.models import UsageRecord


class RetryingBillingStore:
    """Delegates to *inner*, retrying reads on :class:`PersistenceUnavailable`.

    Writes are passed through untouched: a failed write is surfaced to the
    caller so it never runs twice behind its back.
    """

    def __init__(self, inner: BillingStore, policy: RetryPolicy | None = None) -> None:
        self._inner = inner
        self._policy = policy or RetryPolicy()

    @property
    def inner(self) -> BillingStore:
        return self._inner

    def serialized(self, subscription_id: str) -> AbstractAsyncContextManager[None]:
        return self._inner.serialized(subscription_id)

    # Reads

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        return await self._policy.execute(self._inner.get_subscription, subscription_id)

    async def find_subscription_by_processor_ref(
        self, processor_subscription_ref: str
    ) -> Subscription | None:
        return await self._policy.execute(
            self._inner.find_subscription_by_processor_ref, processor_subscription_ref
        )

    async def list_subscriptions(
        self,
        *,
        organization_id: str | None = None,
        statuses: Iterable[SubscriptionStatus] | None = None,
    ) -> list[Subscription]:
        status_list = list(statuses) if statuses is not None else None
        return await self._policy.execute(
            self._inner.list_subscriptions,
            organization_id=organization_id,
            statuses=status_list,
        )

    async def get_invoice(self, invoice_id: str) -> Invoice | None:
        return await self._policy.execute(self._inner.get_invoice, invoice_id)

    async def list_invoices(
        self,
        *,
        subscription_id: str | None = None,
        statuses: Iterable[InvoiceStatus] | None = None,
    ) -> list[Invoice]:
        status_list = list(statuses) if statuses is not None else None
        return await self._policy.execute(
            self._inner.list_invoices, subscription_id=subscription_id, statuses=status_list
        )

    async def list_attempts(self, invoice_id: str) -> list[PaymentAttempt]:
        return await self._policy.execute(self._inner.list_attempts, invoice_id)

    async def list_due_attempts(self, now: datetime) -> list[PaymentAttempt]:
        return await self._policy.execute(self._inner.list_due_attempts, now)

    async def list_usage(
        self,
        subscription_id: str,
        feature_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[UsageRecord]:
        return await self._policy.execute(
            self._inner.list_usage, subscription_id, feature_id, start, end
        )

    async def get_usage_closed_through(self, subscription_id: str) -> datetime | None:
        return await self._policy.execute(self._inner.get_usage_closed_through, subscription_id)

    async def get_processed_event(self, idempotency_key: str) -> ReconciliationResult | None:
        return await self._policy.execute(self._inner.get_processed_event, idempotency_key)

    # Writes

    async def save_subscription(self, subscription: Subscription) -> None:
        await self._inner.save_subscription(subscription)

    async def save_invoice(self, invoice: Invoice) -> None:
        await self._inner.save_invoice(invoice)

    async def save_attempt(self, attempt: PaymentAttempt) -> None:
        await self._inner.save_attempt(attempt)

    async def append_usage(self, record: UsageRecord) -> None:
        await self._inner.append_usage(record)

    async def close_usage_period(self, subscription_id: str, through: datetime) -> None:
        await self._inner.close_usage_period(subscription_id, through)

    async def mark_threshold_notified(self, key: str) -> bool:
        return await self._inner.mark_threshold_notified(key)

    async def record_processed_event(self, result: ReconciliationResult) -> None:
        await self._inner.record_processed_event(result)
