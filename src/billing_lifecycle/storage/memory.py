"""Process-local :class:`BillingStore` for tests, demos and single-node use."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from contextlib import AbstractAsyncContextManager
from datetime import datetime

from billing_lifecycle.collection.models import PaymentAttempt
from billing_lifecycle.core.constants import AttemptOutcome, InvoiceStatus, SubscriptionStatus
from billing_lifecycle.core.exceptions import UsagePeriodClosed
from billing_lifecycle.core.locks import KeyedLock
from billing_lifecycle.invoicing.models import Invoice
from billing_lifecycle.reconciliation.models import ReconciliationResult
from billing_lifecycle.subscriptions.models import Subscription
from billing_lifecycle.usage.models import UsageRecord


class InMemoryBillingStore:
    """Dict-backed store holding deep copies of every saved model.

    Usage records are append-only. ``serialized`` hands out per-subscription
    :class:`asyncio.Lock` sections from a :class:`KeyedLock`.
    """

    def __init__(self) -> None:
        self._locks = KeyedLock()
        self._subscriptions: dict[str, Subscription] = {}
        self._invoices: dict[str, Invoice] = {}
        self._attempts: dict[str, dict[int, PaymentAttempt]] = defaultdict(dict)
        self._usage: dict[str, list[UsageRecord]] = defaultdict(list)
        self._closed_through: dict[str, datetime] = {}
        self._threshold_keys: set[str] = set()
        self._processed_events: dict[str, ReconciliationResult] = {}

    def serialized(self, subscription_id: str) -> AbstractAsyncContextManager[None]:
        return self._locks.hold(subscription_id)

    # ------------------------------------------------------------------ #
    # Subscriptions
    # ------------------------------------------------------------------ #

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        sub = self._subscriptions.get(subscription_id)
        return sub.model_copy(deep=True) if sub is not None else None

    async def find_subscription_by_processor_ref(
        self, processor_subscription_ref: str
    ) -> Subscription | None:
        for sub in self._subscriptions.values():
            if sub.processor_subscription_ref == processor_subscription_ref:
                return sub.model_copy(deep=True)
        return None

    async def list_subscriptions(
        self,
        *,
        organization_id: str | None = None,
        statuses: Iterable[SubscriptionStatus] | None = None,
    ) -> list[Subscription]:
        wanted = set(statuses) if statuses is not None else None
        return [
            sub.model_copy(deep=True)
            for sub in self._subscriptions.values()
            if (organization_id is None or sub.organization_id == organization_id)
            and (wanted is None or sub.status in wanted)
        ]

    async def save_subscription(self, subscription: Subscription) -> None:
        self._subscriptions[subscription.subscription_id] = subscription.model_copy(deep=True)

    # ------------------------------------------------------------------ #
    # Invoices
    # ------------------------------------------------------------------ #

    async def get_invoice(self, invoice_id: str) -> Invoice | None:
        invoice = self._invoices.get(invoice_id)
        return invoice.model_copy(deep=True) if invoice is not None else None

    async def list_invoices(
        self,
        *,
        subscription_id: str | None = None,
        statuses: Iterable[InvoiceStatus] | None = None,
    ) -> list[Invoice]:
        wanted = set(statuses) if statuses is not None else None
        found = [
            inv.model_copy(deep=True)
            for inv in self._invoices.values()
            if (subscription_id is None or inv.subscription_id == subscription_id)
            and (wanted is None or inv.status in wanted)
        ]
        return sorted(found, key=lambda inv: inv.created_at)

    async def save_invoice(self, invoice: Invoice) -> None:
        self._invoices[invoice.invoice_id] = invoice.model_copy(deep=True)

    # ------------------------------------------------------------------ #
    # Payment attempts
    # ------------------------------------------------------------------ #

    async def list_attempts(self, invoice_id: str) -> list[PaymentAttempt]:
        by_number = self._attempts.get(invoice_id, {})
        return [by_number[n].model_copy(deep=True) for n in sorted(by_number)]

    async def list_due_attempts(self, now: datetime) -> list[PaymentAttempt]:
        due = [
            attempt.model_copy(deep=True)
            for by_number in self._attempts.values()
            for attempt in by_number.values()
            if attempt.outcome is AttemptOutcome.SCHEDULED
            and attempt.scheduled_for is not None
            and attempt.scheduled_for <= now
        ]
        return sorted(due, key=lambda a: a.scheduled_for or now)

    async def save_attempt(self, attempt: PaymentAttempt) -> None:
        self._attempts[attempt.invoice_id][attempt.attempt_number] = attempt.model_copy(deep=True)

    # ------------------------------------------------------------------ #
    # Usage
    # ------------------------------------------------------------------ #

    async def append_usage(self, record: UsageRecord) -> None:
        closed = self._closed_through.get(record.subscription_id)
        if closed is not None and record.timestamp < closed:
            raise UsagePeriodClosed(
                f"Usage for {record.subscription_id!r} is closed through {closed.isoformat()}",
                code="usage_period_closed",
                details={"timestamp": record.timestamp.isoformat()},
            )
        self._usage[record.subscription_id].append(record)

    async def list_usage(
        self,
        subscription_id: str,
        feature_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[UsageRecord]:
        return [
            r
            for r in self._usage.get(subscription_id, [])
            if (feature_id is None or r.feature_id == feature_id)
            and (start is None or r.timestamp >= start)
            and (end is None or r.timestamp < end)
        ]

    async def get_usage_closed_through(self, subscription_id: str) -> datetime | None:
        return self._closed_through.get(subscription_id)

    async def close_usage_period(self, subscription_id: str, through: datetime) -> None:
        current = self._closed_through.get(subscription_id)
        if current is None or through > current:
            self._closed_through[subscription_id] = through

    async def mark_threshold_notified(self, key: str) -> bool:
        if key in self._threshold_keys:
            return False
        self._threshold_keys.add(key)
        return True

    # ------------------------------------------------------------------ #
    # Processed processor events
    # ------------------------------------------------------------------ #

    async def get_processed_event(self, idempotency_key: str) -> ReconciliationResult | None:
        result = self._processed_events.get(idempotency_key)
        return result.model_copy() if result is not None else None

    async def record_processed_event(self, result: ReconciliationResult) -> None:
        self._processed_events.setdefault(result.idempotency_key, result.model_copy())
