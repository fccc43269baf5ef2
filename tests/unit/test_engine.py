"""End-to-end tests for core/engine.py: BillingEngine.process_due() and wiring."""
from __future__ import annotations

from datetime import timedelta

import billing_lifecycle
from billing_lifecycle.catalog.catalog import InMemoryEntitlementCatalog
from billing_lifecycle.core.config import EngineConfig
from billing_lifecycle.core.constants import (
    AttemptOutcome,
    InvoiceStatus,
    SubscriptionStatus,
)
from billing_lifecycle.core.engine import BillingEngine
from billing_lifecycle.notifications.sinks import InMemoryNotificationSink
from billing_lifecycle.processor.base import ChargeResult, ChargeStatus
from billing_lifecycle.processor.mock import MockPaymentProcessor
from billing_lifecycle.storage.memory import InMemoryBillingStore
from billing_lifecycle.storage.retrying import RetryingBillingStore

from conftest import START, FakeClock

PERIOD_END = START.replace(month=2)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def test_package_exports() -> None:
    assert billing_lifecycle.__version__ == "0.1.0"
    assert billing_lifecycle.BillingEngine is BillingEngine


def test_store_wrapped_when_read_retries_enabled(
    store: InMemoryBillingStore,
    catalog: InMemoryEntitlementCatalog,
    processor: MockPaymentProcessor,
) -> None:
    engine = BillingEngine(
        store, catalog, processor, config=EngineConfig(persistence_read_retries=2)
    )
    assert isinstance(engine.store, RetryingBillingStore)
    assert engine.store.inner is store


def test_store_used_directly_without_retries(
    engine: BillingEngine, store: InMemoryBillingStore
) -> None:
    assert engine.store is store


# ---------------------------------------------------------------------------
# process_due()
# ---------------------------------------------------------------------------


async def test_nothing_due(engine: BillingEngine) -> None:
    await engine.create_subscription("org_1", "pro", payment_instrument_ref="pm_1")
    report = await engine.process_due()
    assert report.model_dump() == {
        "resumed": [],
        "trials_settled": [],
        "thresholds_notified": [],
        "periods_closed": [],
        "retries_executed": [],
    }


async def test_period_close_bills_usage(
    engine: BillingEngine, processor: MockPaymentProcessor, clock: FakeClock
) -> None:
    sub = await engine.create_subscription("org_1", "pro", payment_instrument_ref="pm_1")
    await engine.record_usage(sub.subscription_id, "X", 100)
    clock.advance(days=10)
    await engine.record_usage(sub.subscription_id, "X", 50)

    clock.set(PERIOD_END + timedelta(hours=1))
    report = await engine.process_due()

    assert report.periods_closed == [sub.subscription_id]
    (invoice,) = await engine.list_invoices(sub.subscription_id)
    assert invoice.subtotal == 1100
    assert invoice.status is InvoiceStatus.PAID
    assert processor.calls[0]["amount"] == 1100
    assert processor.calls[0]["idempotency_key"] == f"{invoice.invoice_id}:1"

    sub = await engine.get_subscription(sub.subscription_id)
    assert sub.current_period_start == PERIOD_END
    assert (await engine.process_due()).periods_closed == []


async def test_decline_then_retry_recovers(
    engine: BillingEngine,
    processor: MockPaymentProcessor,
    sink: InMemoryNotificationSink,
    clock: FakeClock,
) -> None:
    processor.queue(ChargeResult(status=ChargeStatus.DECLINED, decline_code="do_not_honor"))
    sub = await engine.create_subscription("org_1", "pro", payment_instrument_ref="pm_1")

    clock.set(PERIOD_END)
    first = await engine.process_due()
    (invoice,) = await engine.list_invoices(sub.subscription_id)
    assert first.periods_closed == [sub.subscription_id]
    assert first.retries_executed == []
    assert (await engine.get_subscription(sub.subscription_id)).status is SubscriptionStatus.PAST_DUE

    clock.advance(hours=23)
    assert (await engine.process_due()).retries_executed == []

    clock.advance(hours=1)
    second = await engine.process_due()

    assert second.retries_executed == [f"{invoice.invoice_id}:2"]
    attempts = await engine.list_attempts(invoice.invoice_id)
    assert [a.outcome for a in attempts] == [
        AttemptOutcome.DECLINED_RETRYABLE,
        AttemptOutcome.SUCCEEDED,
    ]
    assert (await engine.get_invoice(invoice.invoice_id)).status is InvoiceStatus.PAID
    assert (await engine.get_subscription(sub.subscription_id)).status is SubscriptionStatus.ACTIVE
    assert sink.templates == ["payment_failed_first_attempt", "payment_recovered"]


async def test_trial_settles(engine: BillingEngine, clock: FakeClock) -> None:
    sub = await engine.create_subscription("org_1", "trial", payment_instrument_ref="pm_1")
    assert sub.status is SubscriptionStatus.TRIALING

    clock.set(START + timedelta(days=14))
    report = await engine.process_due()

    assert report.trials_settled == [sub.subscription_id]
    assert (await engine.get_subscription(sub.subscription_id)).status is SubscriptionStatus.ACTIVE


async def test_pause_ends(engine: BillingEngine, clock: FakeClock) -> None:
    sub = await engine.create_subscription("org_1", "pro", payment_instrument_ref="pm_1")
    await engine.pause(sub.subscription_id, days=10)

    clock.advance(days=9)
    assert (await engine.process_due()).resumed == []
    clock.advance(days=1)
    report = await engine.process_due()

    assert report.resumed == [sub.subscription_id]
    assert (await engine.get_subscription(sub.subscription_id)).status is SubscriptionStatus.ACTIVE


async def test_subscriptions_are_independent(
    engine: BillingEngine, processor: MockPaymentProcessor, clock: FakeClock
) -> None:
    processor.queue(ChargeResult(status=ChargeStatus.DECLINED, decline_code="stolen_card"))
    first = await engine.create_subscription("org_1", "pro", payment_instrument_ref="pm_1")
    second = await engine.create_subscription("org_2", "premium", payment_instrument_ref="pm_2")

    clock.set(PERIOD_END)
    report = await engine.process_due()

    assert sorted(report.periods_closed) == sorted(
        [first.subscription_id, second.subscription_id]
    )
    first = await engine.get_subscription(first.subscription_id)
    second = await engine.get_subscription(second.subscription_id)
    assert first.status is SubscriptionStatus.PAST_DUE
    assert second.status is SubscriptionStatus.ACTIVE


async def test_process_due_sends_usage_alerts_once(
    engine: BillingEngine, sink: InMemoryNotificationSink, clock: FakeClock
) -> None:
    sub = await engine.create_subscription("org_1", "pro", payment_instrument_ref="pm_1")
    await engine.record_usage(sub.subscription_id, "X", 80)

    report = await engine.process_due()
    assert report.thresholds_notified == [f"{sub.subscription_id}:X:warning"]
    assert sink.templates == ["usage_threshold_reached"]

    clock.advance(days=1)
    assert (await engine.process_due()).thresholds_notified == []
    assert len(sink.requests) == 1


async def test_usage_alert_for_ended_period_precedes_close(
    engine: BillingEngine, clock: FakeClock
) -> None:
    sub = await engine.create_subscription("org_1", "pro", payment_instrument_ref="pm_1")
    await engine.record_usage(sub.subscription_id, "X", 100)

    clock.set(PERIOD_END)
    report = await engine.process_due()

    assert report.thresholds_notified == [f"{sub.subscription_id}:X:exceeded"]
    assert report.periods_closed == [sub.subscription_id]
