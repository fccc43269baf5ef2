"""Tests for invoicing/builder.py: draft assembly, proration, tax and status changes."""
from __future__ import annotations

from datetime import timedelta

import pytest

from billing_lifecycle.catalog.catalog import InMemoryEntitlementCatalog
from billing_lifecycle.core.config import EngineConfig
from billing_lifecycle.core.constants import InvoiceStatus, LineItemKind
from billing_lifecycle.core.engine import BillingEngine
from billing_lifecycle.core.exceptions import (
    AlreadyFinalized,
    InvalidInvoiceTransition,
    InvalidPeriod,
    InvoiceNotFound,
    NoActivePlan,
)
from billing_lifecycle.invoicing.models import Invoice, LineItem
from billing_lifecycle.processor.mock import MockPaymentProcessor
from billing_lifecycle.storage.memory import InMemoryBillingStore
from billing_lifecycle.tax.rates import StaticTaxRateProvider, TaxRate

from conftest import FakeClock


async def _draft_for_current_period(engine: BillingEngine, sub_id: str) -> Invoice:
    sub = await engine.get_subscription(sub_id)
    return await engine.builder.build_draft_invoice(
        sub_id, sub.current_period_start, sub.current_period_end
    )


# ---------------------------------------------------------------------------
# Draft assembly
# ---------------------------------------------------------------------------


async def test_base_plus_overage_subtotal(engine: BillingEngine) -> None:
    sub = await engine.create_subscription("org_1", "pro", payment_instrument_ref="pm_1")
    await engine.record_usage(sub.subscription_id, "X", 150)

    invoice = await _draft_for_current_period(engine, sub.subscription_id)

    assert invoice.status is InvoiceStatus.DRAFT
    assert invoice.subtotal == 1100
    assert invoice.tax_total == 0
    assert invoice.total == 1100
    base, overage = invoice.line_items
    assert base.kind is LineItemKind.BASE
    assert base.amount == 1000
    assert overage.kind is LineItemKind.OVERAGE
    assert overage.quantity == 50
    assert overage.unit_amount == 2
    assert overage.amount == 100
    assert overage.feature_id == "X"


async def test_no_overage_line_within_allowance(engine: BillingEngine) -> None:
    sub = await engine.create_subscription("org_1", "pro", payment_instrument_ref="pm_1")
    await engine.record_usage(sub.subscription_id, "X", 100)

    invoice = await _draft_for_current_period(engine, sub.subscription_id)
    assert [li.kind for li in invoice.line_items] == [LineItemKind.BASE]
    assert invoice.total == 1000


async def test_partial_period_is_prorated_linearly(
    engine: BillingEngine, clock: FakeClock
) -> None:
    sub = await engine.create_subscription("org_1", "pro", payment_instrument_ref="pm_1")
    start = sub.current_period_start
    # January has 31 days; 15.5 days is exactly half of the standard period.
    end = start + timedelta(days=15, hours=12)

    invoice = await engine.builder.build_draft_invoice(sub.subscription_id, start, end)
    base = invoice.line_items[0]
    assert base.quantity == pytest.approx(0.5)
    assert base.amount == 500
    assert "prorated" in base.description


async def test_overage_amount_rounds_half_up(engine: BillingEngine) -> None:
    sub = await engine.create_subscription("org_1", "pro", payment_instrument_ref="pm_1")
    await engine.record_usage(sub.subscription_id, "X", 100.25)
    invoice = await _draft_for_current_period(engine, sub.subscription_id)
    # 0.25 units * 2 = 0.5 minor units
    assert invoice.line_items[1].amount == 1


async def test_extra_lines_are_appended(engine: BillingEngine) -> None:
    sub = await engine.create_subscription("org_1", "pro", payment_instrument_ref="pm_1")
    credit = LineItem(description="Goodwill credit", kind=LineItemKind.ADJUSTMENT, amount=-250)
    invoice = await engine.builder.build_draft_invoice(
        sub.subscription_id,
        sub.current_period_start,
        sub.current_period_end,
        extra_lines=[credit],
    )
    assert invoice.line_items[-1] == credit
    assert invoice.total == 750


async def test_tax_lines_on_pre_tax_subtotal(
    store: InMemoryBillingStore,
    catalog: InMemoryEntitlementCatalog,
    processor: MockPaymentProcessor,
    clock: FakeClock,
) -> None:
    rates = StaticTaxRateProvider(
        {
            "US-CA": [
                TaxRate(name="State tax", percentage=7.25),
                TaxRate(name="County tax", percentage=1.0, jurisdiction="US-CA"),
                TaxRate(name="Old levy", percentage=5.0, active=False),
            ]
        }
    )
    engine = BillingEngine(
        store,
        catalog,
        processor,
        tax_rates=rates,
        config=EngineConfig(persistence_read_retries=0),
        clock=clock,
    )
    sub = await engine.create_subscription(
        "org_1", "pro", payment_instrument_ref="pm_1", jurisdiction="US-CA"
    )
    await engine.record_usage(sub.subscription_id, "X", 150)

    invoice = await _draft_for_current_period(engine, sub.subscription_id)

    taxes = [li for li in invoice.line_items if li.kind is LineItemKind.TAX]
    assert [t.tax_amount for t in taxes] == [80, 11]  # 79.75 and 11.00
    assert all(t.amount == 0 for t in taxes)
    assert invoice.subtotal == 1100
    assert invoice.tax_total == 91
    assert invoice.total == 1191


async def test_no_tax_without_jurisdiction(
    store: InMemoryBillingStore,
    catalog: InMemoryEntitlementCatalog,
    processor: MockPaymentProcessor,
    clock: FakeClock,
) -> None:
    rates = StaticTaxRateProvider({"US-CA": [TaxRate(name="State tax", percentage=7.25)]})
    engine = BillingEngine(store, catalog, processor, tax_rates=rates, clock=clock)
    sub = await engine.create_subscription("org_1", "pro", payment_instrument_ref="pm_1")
    invoice = await _draft_for_current_period(engine, sub.subscription_id)
    assert invoice.tax_total == 0


async def test_invalid_period(engine: BillingEngine) -> None:
    sub = await engine.create_subscription("org_1", "pro", payment_instrument_ref="pm_1")
    with pytest.raises(InvalidPeriod):
        await engine.builder.build_draft_invoice(
            sub.subscription_id, sub.current_period_end, sub.current_period_start
        )


async def test_inactive_plan_has_no_invoice(
    engine: BillingEngine, catalog: InMemoryEntitlementCatalog
) -> None:
    sub = await engine.create_subscription("org_1", "pro", payment_instrument_ref="pm_1")
    catalog.remove_plan("pro")
    with pytest.raises(NoActivePlan):
        await _draft_for_current_period(engine, sub.subscription_id)


async def test_period_cannot_be_invoiced_twice(engine: BillingEngine) -> None:
    sub = await engine.create_subscription("org_1", "pro", payment_instrument_ref="pm_1")
    first = await _draft_for_current_period(engine, sub.subscription_id)
    with pytest.raises(InvalidInvoiceTransition) as exc_info:
        await _draft_for_current_period(engine, sub.subscription_id)
    assert exc_info.value.code == "period_already_invoiced"

    await engine.builder.void_invoice(first.invoice_id)
    replacement = await _draft_for_current_period(engine, sub.subscription_id)
    assert replacement.invoice_id != first.invoice_id


# ---------------------------------------------------------------------------
# Status changes
# ---------------------------------------------------------------------------


async def test_finalize_sets_due_date(
    store: InMemoryBillingStore,
    catalog: InMemoryEntitlementCatalog,
    processor: MockPaymentProcessor,
    clock: FakeClock,
) -> None:
    engine = BillingEngine(
        store,
        catalog,
        processor,
        config=EngineConfig(invoice_due_days=7, persistence_read_retries=0),
        clock=clock,
    )
    sub = await engine.create_subscription("org_1", "pro", payment_instrument_ref="pm_1")
    draft = await _draft_for_current_period(engine, sub.subscription_id)

    invoice = await engine.builder.finalize_invoice(draft.invoice_id)
    assert invoice.status is InvoiceStatus.OPEN
    assert invoice.finalized_at == clock.now
    assert invoice.due_date == clock.now + timedelta(days=7)


async def test_finalize_twice_raises(engine: BillingEngine) -> None:
    sub = await engine.create_subscription("org_1", "pro", payment_instrument_ref="pm_1")
    draft = await _draft_for_current_period(engine, sub.subscription_id)
    await engine.builder.finalize_invoice(draft.invoice_id)
    with pytest.raises(AlreadyFinalized):
        await engine.builder.finalize_invoice(draft.invoice_id)


async def test_adjustment_appends_line(engine: BillingEngine) -> None:
    sub = await engine.create_subscription("org_1", "pro", payment_instrument_ref="pm_1")
    draft = await _draft_for_current_period(engine, sub.subscription_id)
    await engine.builder.finalize_invoice(draft.invoice_id)

    invoice = await engine.builder.add_adjustment(draft.invoice_id, "Service credit", -100)
    assert invoice.line_items[0].amount == 1000
    assert invoice.line_items[-1].kind is LineItemKind.ADJUSTMENT
    assert invoice.total == 900


async def test_paid_is_terminal(engine: BillingEngine) -> None:
    sub = await engine.create_subscription("org_1", "pro", payment_instrument_ref="pm_1")
    draft = await _draft_for_current_period(engine, sub.subscription_id)
    await engine.builder.finalize_invoice(draft.invoice_id)
    paid = await engine.builder.mark_paid(draft.invoice_id, processor_ref="ch_1")
    assert paid.status is InvoiceStatus.PAID
    assert paid.amount_due == 0

    with pytest.raises(InvalidInvoiceTransition):
        await engine.builder.void_invoice(draft.invoice_id)
    with pytest.raises(InvalidInvoiceTransition):
        await engine.builder.mark_uncollectible(draft.invoice_id)
    with pytest.raises(AlreadyFinalized):
        await engine.builder.finalize_invoice(draft.invoice_id)
    with pytest.raises(InvalidInvoiceTransition):
        await engine.builder.add_adjustment(draft.invoice_id, "late credit", -10)

    again = await engine.builder.mark_paid(draft.invoice_id, processor_ref="ch_2")
    assert again.status is InvoiceStatus.PAID
    assert again.processor_charge_ref == "ch_1"
    assert again.paid_at == paid.paid_at


async def test_draft_cannot_be_paid(engine: BillingEngine) -> None:
    sub = await engine.create_subscription("org_1", "pro", payment_instrument_ref="pm_1")
    draft = await _draft_for_current_period(engine, sub.subscription_id)
    with pytest.raises(InvalidInvoiceTransition) as exc_info:
        await engine.builder.mark_paid(draft.invoice_id)
    assert exc_info.value.code == "invalid_invoice_transition"


async def test_uncollectible_can_still_be_paid(engine: BillingEngine) -> None:
    sub = await engine.create_subscription("org_1", "pro", payment_instrument_ref="pm_1")
    draft = await _draft_for_current_period(engine, sub.subscription_id)
    await engine.builder.finalize_invoice(draft.invoice_id)
    await engine.builder.mark_uncollectible(draft.invoice_id)

    invoice = await engine.builder.mark_paid(draft.invoice_id)
    assert invoice.status is InvoiceStatus.PAID


async def test_get_invoice_missing(engine: BillingEngine) -> None:
    with pytest.raises(InvoiceNotFound):
        await engine.get_invoice("in_missing")
