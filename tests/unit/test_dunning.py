"""Tests for dunning/: risk policy, retry scheduling, escalation and recovery."""
from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import timedelta

import pydantic
import pytest

from billing_lifecycle.catalog.catalog import InMemoryEntitlementCatalog
from billing_lifecycle.core.config import EngineConfig
from billing_lifecycle.core.constants import (
    AttemptOutcome,
    DunningAction,
    InvoiceStatus,
    RiskTier,
    SubscriptionStatus,
)
from billing_lifecycle.core.engine import BillingEngine
from billing_lifecycle.dunning.policy import (
    AGGRESSIVE_STRATEGY,
    CONSERVATIVE_STRATEGY,
    DunningPolicy,
    RetryStrategy,
)
from billing_lifecycle.notifications.notifier import Notifier
from billing_lifecycle.notifications.sinks import InMemoryNotificationSink
from billing_lifecycle.processor.base import ChargeResult, ChargeStatus
from billing_lifecycle.processor.mock import MockPaymentProcessor
from billing_lifecycle.storage.memory import InMemoryBillingStore
from billing_lifecycle.subscriptions.models import Subscription

from conftest import START, FakeClock

PERIOD_END = START.replace(month=2)


def _decline(code: str) -> ChargeResult:
    return ChargeResult(status=ChargeStatus.DECLINED, decline_code=code)


async def _subscribe_and_close(
    engine: BillingEngine, clock: FakeClock
) -> tuple[Subscription, str]:
    sub = await engine.create_subscription("org_1", "pro", payment_instrument_ref="pm_1")
    clock.set(PERIOD_END)
    result = await engine.close_period(sub.subscription_id)
    assert result.invoice is not None
    return result.subscription, result.invoice.invoice_id


@pytest.fixture
async def three_strikes_engine(
    store: InMemoryBillingStore,
    catalog: InMemoryEntitlementCatalog,
    processor: MockPaymentProcessor,
    notifier: Notifier,
    clock: FakeClock,
) -> AsyncGenerator[BillingEngine, None]:
    policy = DunningPolicy(
        strategies={
            RiskTier.LOW: RetryStrategy(name="THREE_STRIKES", max_attempts=3, intervals_hours=[1]),
            RiskTier.MEDIUM: AGGRESSIVE_STRATEGY,
            RiskTier.HIGH: CONSERVATIVE_STRATEGY,
        }
    )
    eng = BillingEngine(
        store,
        catalog,
        processor,
        notifier=notifier,
        config=EngineConfig(dunning=policy, persistence_read_retries=0),
        clock=clock,
    )
    yield eng
    await eng.close()


# ---------------------------------------------------------------------------
# Policy data
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("reason", "tier"),
    [
        ("fraudulent", RiskTier.HIGH),
        ("STOLEN_CARD", RiskTier.HIGH),
        ("insufficient_funds", RiskTier.MEDIUM),
        ("card_declined:insufficient_funds", RiskTier.MEDIUM),
        ("timeout", RiskTier.MEDIUM),
        ("do_not_honor", RiskTier.LOW),
        ("", RiskTier.LOW),
        (None, RiskTier.LOW),
    ],
)
def test_classify(reason: str | None, tier: RiskTier) -> None:
    assert DunningPolicy().classify(reason) is tier


def test_tiers_map_to_strategies() -> None:
    policy = DunningPolicy()
    assert policy.strategy_for(RiskTier.LOW).name == "DEFAULT"
    assert policy.strategy_for(RiskTier.MEDIUM).name == "AGGRESSIVE"
    assert policy.strategy_for(RiskTier.HIGH).name == "CONSERVATIVE"


def test_delay_after_repeats_last_interval() -> None:
    strategy = RetryStrategy(name="S", max_attempts=5, intervals_hours=[1, 4])
    assert strategy.delay_after(1) == timedelta(hours=1)
    assert strategy.delay_after(2) == timedelta(hours=4)
    assert strategy.delay_after(4) == timedelta(hours=4)
    assert RetryStrategy(name="NOW", max_attempts=2).delay_after(1) == timedelta(0)


@pytest.mark.parametrize(
    ("days", "template"),
    [
        (0, "payment_failed_first_attempt"),
        (2, "payment_failed_first_attempt"),
        (3, "payment_failed_second_attempt"),
        (7, "payment_failed_final_warning"),
        (30, "payment_failed_final_warning"),
    ],
)
def test_template_by_days_past_due(days: int, template: str) -> None:
    assert DunningPolicy().template_for(days) == template


def test_policy_requires_every_tier() -> None:
    with pytest.raises(pydantic.ValidationError):
        DunningPolicy(strategies={RiskTier.LOW: AGGRESSIVE_STRATEGY})


# ---------------------------------------------------------------------------
# Exhaustion
# ---------------------------------------------------------------------------


async def test_exhaustion_cancels_and_never_schedules_fourth_attempt(
    three_strikes_engine: BillingEngine,
    processor: MockPaymentProcessor,
    sink: InMemoryNotificationSink,
    clock: FakeClock,
) -> None:
    engine = three_strikes_engine
    processor.queue(*(_decline("do_not_honor") for _ in range(3)))
    sub, invoice_id = await _subscribe_and_close(engine, clock)
    assert sub.status is SubscriptionStatus.PAST_DUE

    for _ in range(2):
        clock.advance(hours=1)
        report = await engine.process_due()
        assert len(report.retries_executed) == 1

    sub = await engine.get_subscription(sub.subscription_id)
    assert sub.status is SubscriptionStatus.CANCELED
    assert sub.cancellation_reason == "nonpayment"
    assert sub.history[-1].reason == "dunning_exhausted"
    invoice = await engine.get_invoice(invoice_id)
    assert invoice.status is InvoiceStatus.UNCOLLECTIBLE

    clock.advance(days=7)
    report = await engine.process_due()
    assert report.retries_executed == []

    attempts = await engine.list_attempts(invoice_id)
    assert [a.attempt_number for a in attempts] == [1, 2, 3]
    assert all(a.outcome is AttemptOutcome.DECLINED_RETRYABLE for a in attempts)
    assert len(processor.calls) == 3
    assert sink.templates[-1] == "subscription_canceled_nonpayment"

    state = await engine.dunning_state(invoice_id)
    assert state.exhausted is True
    assert state.attempts_so_far == 3
    assert state.failed_attempts == 3
    assert state.next_retry_at is None


async def test_exhaustion_decision(
    three_strikes_engine: BillingEngine, processor: MockPaymentProcessor, clock: FakeClock
) -> None:
    engine = three_strikes_engine
    processor.queue(*(_decline("do_not_honor") for _ in range(3)))
    _, invoice_id = await _subscribe_and_close(engine, clock)
    for number in (2, 3):
        await engine.collector.execute_attempt(invoice_id, number)
        decision = await engine.on_payment_failure(invoice_id, "do_not_honor")

    assert decision.action is DunningAction.EXHAUSTED
    assert decision.failed_attempt_number == 3
    assert decision.next_attempt is None
    assert decision.notification_template == "subscription_canceled_nonpayment"


# ---------------------------------------------------------------------------
# Medium risk: aggressive retries that need a new instrument
# ---------------------------------------------------------------------------


async def test_medium_risk_failure_then_recovery(
    engine: BillingEngine,
    processor: MockPaymentProcessor,
    sink: InMemoryNotificationSink,
    clock: FakeClock,
) -> None:
    processor.queue(_decline("insufficient_funds"))
    sub, invoice_id = await _subscribe_and_close(engine, clock)

    assert sub.status is SubscriptionStatus.PAST_DUE
    attempts = await engine.list_attempts(invoice_id)
    assert attempts[0].risk_tier is RiskTier.MEDIUM
    assert attempts[0].strategy == "AGGRESSIVE"
    assert attempts[0].next_retry_at == PERIOD_END + timedelta(hours=3)
    assert attempts[1].outcome is AttemptOutcome.SCHEDULED
    assert attempts[1].scheduled_for == PERIOD_END + timedelta(hours=3)
    assert sink.templates == ["payment_method_update_required"]

    clock.advance(hours=1)
    await engine.update_payment_instrument(sub.subscription_id, "pm_2")
    clock.advance(hours=3)
    report = await engine.process_due()

    assert report.retries_executed == [f"{invoice_id}:2"]
    assert processor.calls[-1]["instrument_ref"] == "pm_2"
    invoice = await engine.get_invoice(invoice_id)
    assert invoice.status is InvoiceStatus.PAID
    sub = await engine.get_subscription(sub.subscription_id)
    assert sub.status is SubscriptionStatus.ACTIVE
    assert [h.to_status for h in sub.history] == [
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.ACTIVE,
    ]
    assert sub.current_period_start == PERIOD_END
    assert sub.current_period_end == START.replace(month=3)
    assert sink.templates[-1] == "payment_recovered"


async def test_retry_waits_for_new_instrument(
    engine: BillingEngine,
    processor: MockPaymentProcessor,
    sink: InMemoryNotificationSink,
    clock: FakeClock,
) -> None:
    processor.queue(_decline("expired_card"))
    sub, invoice_id = await _subscribe_and_close(engine, clock)

    clock.advance(hours=4)
    first = await engine.process_due()
    second = await engine.process_due()

    assert first.retries_executed == []
    assert second.retries_executed == []
    assert len(processor.calls) == 1
    # One reminder when the retry came due, not one per pass.
    assert sink.templates == ["payment_method_update_required"] * 2
    state = await engine.dunning_state(invoice_id)
    assert state.requires_new_instrument is True
    assert state.awaiting_instrument is True
    assert state.risk_tier is RiskTier.MEDIUM

    await engine.update_payment_instrument(sub.subscription_id, "pm_new")
    clock.advance(minutes=1)
    report = await engine.process_due()
    assert report.retries_executed == [f"{invoice_id}:2"]
    assert (await engine.get_invoice(invoice_id)).status is InvoiceStatus.PAID


# ---------------------------------------------------------------------------
# Other paths
# ---------------------------------------------------------------------------


async def test_high_risk_goes_to_most_urgent_notice(
    engine: BillingEngine,
    processor: MockPaymentProcessor,
    sink: InMemoryNotificationSink,
    clock: FakeClock,
) -> None:
    processor.queue(_decline("stolen_card"))
    sub = await engine.create_subscription("org_1", "pro", payment_instrument_ref="pm_1")
    clock.set(PERIOD_END)
    result = await engine.close_period(sub.subscription_id)

    assert result.attempt is not None
    assert result.attempt.outcome is AttemptOutcome.DECLINED_PERMANENT
    decision = result.decision
    assert decision is not None
    assert decision.action is DunningAction.RETRY_SCHEDULED
    assert decision.risk_tier is RiskTier.HIGH
    assert decision.strategy == "CONSERVATIVE"
    assert decision.requires_new_instrument is True
    assert decision.next_retry_at == PERIOD_END + timedelta(hours=72)
    assert decision.notification_template == "payment_failed_final_warning"
    assert sink.templates == ["payment_failed_final_warning"]


async def test_low_risk_retry_without_new_instrument(
    engine: BillingEngine, processor: MockPaymentProcessor, clock: FakeClock
) -> None:
    processor.queue(_decline("do_not_honor"))
    _, invoice_id = await _subscribe_and_close(engine, clock)

    clock.advance(hours=24)
    report = await engine.process_due()
    assert report.retries_executed == [f"{invoice_id}:2"]
    assert processor.calls[-1]["instrument_ref"] == "pm_1"
    assert (await engine.get_invoice(invoice_id)).status is InvoiceStatus.PAID


async def test_retries_wait_while_paused(
    engine: BillingEngine, processor: MockPaymentProcessor, clock: FakeClock
) -> None:
    processor.queue(_decline("do_not_honor"))
    sub, invoice_id = await _subscribe_and_close(engine, clock)
    await engine.pause(sub.subscription_id, days=30)

    clock.advance(days=2)
    report = await engine.process_due()
    assert report.retries_executed == []

    clock.advance(days=29)
    report = await engine.process_due()
    assert report.resumed == [sub.subscription_id]
    assert report.retries_executed == [f"{invoice_id}:2"]
    assert (await engine.get_invoice(invoice_id)).status is InvoiceStatus.PAID


async def test_stale_retry_skipped_after_out_of_band_payment(
    engine: BillingEngine, processor: MockPaymentProcessor, clock: FakeClock
) -> None:
    processor.queue(_decline("do_not_honor"))
    _, invoice_id = await _subscribe_and_close(engine, clock)
    await engine.scheduler.on_payment_success(invoice_id, processor_ref="ch_manual")

    first, retry = await engine.list_attempts(invoice_id)
    assert first.outcome is AttemptOutcome.DECLINED_RETRYABLE
    assert retry.outcome is AttemptOutcome.CANCELED
    state = await engine.dunning_state(invoice_id)
    assert state.next_retry_at is None
    assert state.attempts_so_far == 1

    clock.advance(days=2)
    report = await engine.process_due()
    assert report.retries_executed == []
    assert await engine.store.list_due_attempts(clock.now) == []
    assert len(processor.calls) == 1


async def test_void_cancels_scheduled_retry(
    engine: BillingEngine, processor: MockPaymentProcessor, clock: FakeClock
) -> None:
    processor.queue(_decline("do_not_honor"))
    _, invoice_id = await _subscribe_and_close(engine, clock)

    await engine.builder.void_invoice(invoice_id, reason="billing_error")

    attempts = await engine.list_attempts(invoice_id)
    assert attempts[-1].outcome is AttemptOutcome.CANCELED
    assert attempts[-1].failure_reason == "invoice_void"
    assert (await engine.dunning_state(invoice_id)).next_retry_at is None


async def test_deferred_cancel_while_past_due_applies_on_recovery(
    engine: BillingEngine, processor: MockPaymentProcessor, clock: FakeClock
) -> None:
    processor.queue(_decline("insufficient_funds"))
    sub, invoice_id = await _subscribe_and_close(engine, clock)
    assert sub.status is SubscriptionStatus.PAST_DUE

    sub = await engine.cancel(sub.subscription_id, at_period_end=True)
    assert sub.status is SubscriptionStatus.PAST_DUE
    assert sub.cancel_at_period_end is True

    clock.advance(hours=1)
    await engine.update_payment_instrument(sub.subscription_id, "pm_2")
    clock.advance(hours=3)
    report = await engine.process_due()
    assert report.retries_executed == [f"{invoice_id}:2"]

    sub = await engine.get_subscription(sub.subscription_id)
    assert sub.status is SubscriptionStatus.CANCELED
    assert sub.cancellation_reason == "canceled_at_period_end"
    assert sub.cancel_at_period_end is False
    assert sub.current_period_end == PERIOD_END

    clock.set(START.replace(month=3))
    report = await engine.process_due()
    assert report.periods_closed == []
    invoices = await engine.list_invoices(sub.subscription_id)
    assert [(i.period_start, i.status) for i in invoices] == [(START, InvoiceStatus.PAID)]
    assert len(processor.calls) == 2


async def test_failure_on_paid_invoice_is_not_applicable(
    engine: BillingEngine, clock: FakeClock
) -> None:
    _, invoice_id = await _subscribe_and_close(engine, clock)
    assert (await engine.get_invoice(invoice_id)).status is InvoiceStatus.PAID

    decision = await engine.on_payment_failure(invoice_id, "insufficient_funds")
    assert decision.action is DunningAction.NOT_APPLICABLE
    assert len(await engine.list_attempts(invoice_id)) == 1


async def test_failure_with_retry_in_flight_is_not_applicable(
    engine: BillingEngine, processor: MockPaymentProcessor, clock: FakeClock
) -> None:
    processor.queue(_decline("do_not_honor"))
    _, invoice_id = await _subscribe_and_close(engine, clock)

    decision = await engine.on_payment_failure(invoice_id, "do_not_honor")
    assert decision.action is DunningAction.NOT_APPLICABLE
    assert decision.next_attempt is not None
    assert decision.next_attempt.attempt_number == 2
    assert len(await engine.list_attempts(invoice_id)) == 2


async def test_success_reported_twice_notifies_once(
    engine: BillingEngine,
    processor: MockPaymentProcessor,
    sink: InMemoryNotificationSink,
    clock: FakeClock,
) -> None:
    processor.queue(_decline("do_not_honor"))
    sub, invoice_id = await _subscribe_and_close(engine, clock)

    await engine.scheduler.on_payment_success(invoice_id)
    await engine.scheduler.on_payment_success(invoice_id)

    assert sink.templates.count("payment_recovered") == 1
    sub = await engine.get_subscription(sub.subscription_id)
    assert sub.current_period_start == PERIOD_END
