"""Event reconciler: applies processor events exactly once."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from billing_lifecycle.core.constants import (
    AttemptOutcome,
    InvoiceStatus,
    ReconciliationStatus,
    RiskTier,
    SubscriptionStatus,
)
from billing_lifecycle.core.exceptions import (
    InvalidTransition,
    InvoiceNotFound,
    SubscriptionNotFound,
)
from billing_lifecycle.core.locks import KeyedLock
from billing_lifecycle.reconciliation.models import (
    ChargeFailed,
    ChargeSucceeded,
    PaymentMethodAttached,
    ProcessorEvent,
    ReconciliationResult,
    SubscriptionDeleted,
    SubscriptionUpdated,
    parse_processor_event,
)
from billing_lifecycle.utils.clock import Clock, utc_now

if TYPE_CHECKING:
    from billing_lifecycle.collection.collector import PaymentCollector
    from billing_lifecycle.collection.models import PaymentAttempt
    from billing_lifecycle.dunning.scheduler import DunningScheduler
    from billing_lifecycle.invoicing.models import Invoice
    from billing_lifecycle.processor.base import PaymentProcessor
    from billing_lifecycle.storage.base import BillingStore
    from billing_lifecycle.subscriptions.machine import SubscriptionStateMachine
    from billing_lifecycle.subscriptions.models import Subscription

logger = structlog.get_logger(__name__)

_R = ReconciliationStatus

# Processor subscription statuses that mean the subscription is gone.
CANCELED_PROCESSOR_STATUSES = frozenset({"canceled", "incomplete_expired"})


class EventReconciler:
    """Converges internal state with the processor's asynchronous events.

    Each event is applied at most once per idempotency key. The outcome is
    recorded in the store's processed-event ledger and returned unchanged
    for every redelivery. Events for the same key are handled one at a
    time; their effects then run inside the affected subscription's
    single-writer section like any other change.

    ``paid`` is a one-way fact: a late ``charge.failed`` or a duplicate
    ``charge.succeeded`` never moves a paid invoice and never creates a
    second success attempt or notification.

    Errors from collaborators propagate without being recorded, so the
    processor's redelivery can try again.
    """

    def __init__(
        self,
        store: BillingStore,
        machine: SubscriptionStateMachine,
        collector: PaymentCollector,
        scheduler: DunningScheduler,
        *,
        processor: PaymentProcessor | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._machine = machine
        self._collector = collector
        self._scheduler = scheduler
        self._processor = processor
        self._clock = clock
        self._event_locks = KeyedLock()

    async def apply_external_event(
        self, event: ProcessorEvent | dict[str, Any]
    ) -> ReconciliationResult:
        """Apply *event* once; replays return the recorded result."""
        if isinstance(event, dict):
            event = parse_processor_event(event)
        key = event.idempotency_key

        async with self._event_locks.hold(key):
            previous = await self._store.get_processed_event(key)
            if previous is not None:
                logger.info(
                    "processor_event_replayed",
                    idempotency_key=key,
                    event_type=event.event_type,
                    status=previous.status.value,
                )
                return previous

            result = await self._dispatch(event)
            await self._store.record_processed_event(result)

        logger.info(
            "processor_event_applied",
            idempotency_key=key,
            event_type=event.event_type,
            status=result.status.value,
            detail=result.detail,
        )
        return result

    async def get_result(self, idempotency_key: str) -> ReconciliationResult | None:
        return await self._store.get_processed_event(idempotency_key)

    async def _dispatch(self, event: ProcessorEvent) -> ReconciliationResult:
        data = event.data
        if isinstance(data, ChargeSucceeded):
            return await self._charge_succeeded(event, data)
        if isinstance(data, ChargeFailed):
            return await self._charge_failed(event, data)
        if isinstance(data, SubscriptionUpdated):
            return await self._subscription_updated(event, data)
        if isinstance(data, SubscriptionDeleted):
            return await self._subscription_deleted(event, data)
        if isinstance(data, PaymentMethodAttached):
            return await self._payment_method_attached(event, data)

        logger.warning(
            "processor_event_unknown",
            idempotency_key=event.idempotency_key,
            event_type=event.event_type,
        )
        return self._result(event, _R.IGNORED, "unknown event type")

    # ------------------------------------------------------------------ #
    # Charges
    # ------------------------------------------------------------------ #

    async def _charge_succeeded(
        self, event: ProcessorEvent, data: ChargeSucceeded
    ) -> ReconciliationResult:
        invoice = await self._store.get_invoice(data.invoice_id)
        if invoice is None:
            return self._result(event, _R.IGNORED, "unknown invoice", invoice_id=data.invoice_id)
        ids = {"invoice_id": invoice.invoice_id, "subscription_id": invoice.subscription_id}

        async with self._store.serialized(invoice.subscription_id):
            invoice = await self._require_invoice(data.invoice_id)
            if invoice.status is InvoiceStatus.PAID:
                return self._result(event, _R.ALREADY_APPLIED, "invoice already paid", **ids)
            if invoice.status in (InvoiceStatus.DRAFT, InvoiceStatus.VOID):
                logger.warning(
                    "charge_succeeded_conflict",
                    invoice_id=invoice.invoice_id,
                    invoice_status=invoice.status.value,
                )
                return self._result(
                    event, _R.CONFLICT, f"invoice is {invoice.status.value}", **ids
                )

            if invoice.status is InvoiceStatus.OPEN:
                target = await self._find_attempt(invoice.invoice_id, data.attempt_number)
                if target is None:
                    await self._collector.record_settled_attempt(
                        invoice.invoice_id,
                        AttemptOutcome.SUCCEEDED,
                        processor_ref=data.processor_ref,
                    )
                else:
                    await self._collector.record_outcome(
                        invoice.invoice_id,
                        target.attempt_number,
                        AttemptOutcome.SUCCEEDED,
                        processor_ref=data.processor_ref,
                    )

            await self._scheduler.on_payment_success(
                invoice.invoice_id, processor_ref=data.processor_ref
            )
        return self._result(event, _R.APPLIED, "invoice marked paid", **ids)

    async def _find_attempt(
        self, invoice_id: str, attempt_number: int | None
    ) -> PaymentAttempt | None:
        if attempt_number is not None:
            attempt = await self._collector.get_attempt(invoice_id, attempt_number)
            if attempt is not None and (
                attempt.outcome.is_open or attempt.outcome is AttemptOutcome.PROCESSOR_ERROR
            ):
                return attempt
        return await self._collector.open_attempt(invoice_id)

    async def _charge_failed(
        self, event: ProcessorEvent, data: ChargeFailed
    ) -> ReconciliationResult:
        invoice = await self._store.get_invoice(data.invoice_id)
        if invoice is None:
            return self._result(event, _R.IGNORED, "unknown invoice", invoice_id=data.invoice_id)
        ids = {"invoice_id": invoice.invoice_id, "subscription_id": invoice.subscription_id}

        async with self._store.serialized(invoice.subscription_id):
            invoice = await self._require_invoice(data.invoice_id)
            if invoice.status is not InvoiceStatus.OPEN:
                return self._result(
                    event, _R.IGNORED, f"invoice is {invoice.status.value}", **ids
                )

            if data.attempt_number is not None:
                target = await self._collector.get_attempt(invoice.invoice_id, data.attempt_number)
            else:
                target = await self._collector.open_attempt(invoice.invoice_id)
            if target is None or target.outcome is AttemptOutcome.SCHEDULED:
                return self._result(event, _R.IGNORED, "no charge in flight", **ids)
            if target.outcome is not AttemptOutcome.PENDING:
                return self._result(event, _R.ALREADY_APPLIED, "attempt already settled", **ids)

            tier = self._scheduler.policy.classify(data.failure_reason)
            outcome = (
                AttemptOutcome.DECLINED_PERMANENT
                if tier is RiskTier.HIGH
                else AttemptOutcome.DECLINED_RETRYABLE
            )
            await self._collector.record_outcome(
                invoice.invoice_id,
                target.attempt_number,
                outcome,
                processor_ref=data.processor_ref,
                failure_reason=data.failure_reason,
            )
            decision = await self._scheduler.on_payment_failure(
                invoice.invoice_id, data.failure_reason
            )
        return self._result(event, _R.APPLIED, f"dunning {decision.action.value}", **ids)

    # ------------------------------------------------------------------ #
    # Subscriptions
    # ------------------------------------------------------------------ #

    async def _subscription_updated(
        self, event: ProcessorEvent, data: SubscriptionUpdated
    ) -> ReconciliationResult:
        subscription = await self._store.find_subscription_by_processor_ref(
            data.processor_subscription_ref
        )
        if subscription is None:
            return self._result(event, _R.IGNORED, "unknown subscription")
        sub_id = subscription.subscription_id

        try:
            if data.status in CANCELED_PROCESSOR_STATUSES:
                return await self._cancel(event, subscription, "processor_canceled")
            if data.cancel_at_period_end is not None:
                await self._machine.set_cancel_at_period_end(sub_id, data.cancel_at_period_end)
                return self._result(
                    event,
                    _R.APPLIED,
                    f"cancel_at_period_end={data.cancel_at_period_end}",
                    subscription_id=sub_id,
                )
        except InvalidTransition as exc:
            return self._conflict(event, exc, subscription_id=sub_id)
        return self._result(event, _R.IGNORED, "nothing to apply", subscription_id=sub_id)

    async def _subscription_deleted(
        self, event: ProcessorEvent, data: SubscriptionDeleted
    ) -> ReconciliationResult:
        subscription = await self._store.find_subscription_by_processor_ref(
            data.processor_subscription_ref
        )
        if subscription is None:
            return self._result(event, _R.IGNORED, "unknown subscription")
        try:
            return await self._cancel(event, subscription, "processor_deleted")
        except InvalidTransition as exc:
            return self._conflict(event, exc, subscription_id=subscription.subscription_id)

    async def _cancel(
        self, event: ProcessorEvent, subscription: Subscription, reason: str
    ) -> ReconciliationResult:
        sub_id = subscription.subscription_id
        if subscription.status is SubscriptionStatus.CANCELED:
            return self._result(
                event, _R.ALREADY_APPLIED, "subscription already canceled", subscription_id=sub_id
            )
        await self._machine.cancel(sub_id, reason=reason)
        return self._result(event, _R.APPLIED, "subscription canceled", subscription_id=sub_id)

    async def _payment_method_attached(
        self, event: ProcessorEvent, data: PaymentMethodAttached
    ) -> ReconciliationResult:
        subscription = await self._store.find_subscription_by_processor_ref(
            data.processor_subscription_ref
        )
        if subscription is None:
            return self._result(event, _R.IGNORED, "unknown subscription")
        try:
            await self._machine.update_payment_instrument(
                subscription.subscription_id, data.instrument_ref
            )
        except InvalidTransition as exc:
            return self._conflict(event, exc, subscription_id=subscription.subscription_id)
        return self._result(
            event,
            _R.APPLIED,
            "payment instrument updated",
            subscription_id=subscription.subscription_id,
        )

    # ------------------------------------------------------------------ #
    # Pull-based sync
    # ------------------------------------------------------------------ #

    async def sync_subscription(self, subscription_id: str) -> Subscription:
        """Pull the processor's view of a subscription and converge cancellation."""
        subscription = await self._store.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(
                f"Subscription {subscription_id!r} not found",
                code="subscription_not_found",
            )
        if self._processor is None or subscription.processor_subscription_ref is None:
            return subscription

        remote_status = await self._processor.retrieve_subscription_status(
            subscription.processor_subscription_ref
        )
        if remote_status in CANCELED_PROCESSOR_STATUSES and not subscription.is_terminal:
            try:
                subscription = await self._machine.cancel(subscription_id, reason="processor_canceled")
            except InvalidTransition:
                logger.warning(
                    "processor_sync_conflict",
                    subscription_id=subscription_id,
                    local_status=subscription.status.value,
                    remote_status=remote_status,
                )
        logger.debug(
            "processor_subscription_synced",
            subscription_id=subscription_id,
            remote_status=remote_status,
        )
        return subscription

    async def sync_subscriptions(self) -> list[Subscription]:
        """Sync every live subscription that has a processor reference."""
        live = await self._store.list_subscriptions(
            statuses=[s for s in SubscriptionStatus if not s.is_terminal]
        )
        return [
            await self.sync_subscription(s.subscription_id)
            for s in live
            if s.processor_subscription_ref is not None
        ]

    # ------------------------------------------------------------------ #
    # Result helpers
    # ------------------------------------------------------------------ #

    def _result(
        self,
        event: ProcessorEvent,
        status: ReconciliationStatus,
        detail: str,
        *,
        invoice_id: str | None = None,
        subscription_id: str | None = None,
    ) -> ReconciliationResult:
        return ReconciliationResult(
            idempotency_key=event.idempotency_key,
            event_type=event.event_type,
            status=status,
            detail=detail,
            invoice_id=invoice_id,
            subscription_id=subscription_id,
            applied_at=self._clock(),
        )

    def _conflict(
        self, event: ProcessorEvent, exc: InvalidTransition, *, subscription_id: str
    ) -> ReconciliationResult:
        logger.warning(
            "processor_event_conflict",
            idempotency_key=event.idempotency_key,
            event_type=event.event_type,
            subscription_id=subscription_id,
            error=str(exc),
        )
        return self._result(event, _R.CONFLICT, str(exc), subscription_id=subscription_id)

    async def _require_invoice(self, invoice_id: str) -> Invoice:
        invoice = await self._store.get_invoice(invoice_id)
        if invoice is None:
            raise InvoiceNotFound(f"Invoice {invoice_id!r} not found", code="invoice_not_found")
        return invoice
