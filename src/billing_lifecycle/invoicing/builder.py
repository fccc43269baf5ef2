"""Invoice builder: draft assembly, finalization and forward-only status changes."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog

from billing_lifecycle.core.constants import AttemptOutcome, InvoiceStatus, LineItemKind
from billing_lifecycle.core.exceptions import (
    AlreadyFinalized,
    InvalidInvoiceTransition,
    InvalidPeriod,
    InvoiceNotFound,
    NoActivePlan,
    SubscriptionNotFound,
)
from billing_lifecycle.invoicing.models import Invoice, LineItem
from billing_lifecycle.utils.clock import Clock, utc_now
from billing_lifecycle.utils.money import percentage_of, round_minor
from billing_lifecycle.utils.periods import add_interval, elapsed_fraction

if TYPE_CHECKING:
    from billing_lifecycle.catalog.catalog import EntitlementCatalog
    from billing_lifecycle.catalog.models import Plan
    from billing_lifecycle.storage.base import BillingStore
    from billing_lifecycle.subscriptions.models import Subscription
    from billing_lifecycle.tax.rates import TaxRateProvider
    from billing_lifecycle.usage.meter import UsageMeter

logger = structlog.get_logger(__name__)


class InvoiceBuilder:
    """Builds invoices from plan pricing, metered usage and tax rates.

    Line items are fixed at finalization. Corrections after that point are
    appended as adjustment lines, never edited in place. Status changes
    follow :data:`~billing_lifecycle.invoicing.models.INVOICE_TRANSITIONS`;
    ``paid`` is terminal and nothing can move an invoice out of it.

    Args:
        store: Persistence collaborator.
        catalog: Plan source, read at build time.
        meter: Supplies per-feature consumption for the period.
        tax_rates: Optional tax-rate lookup. Without it no tax lines are built.
        invoice_due_days: Days between finalization and the due date.
    """

    def __init__(
        self,
        store: BillingStore,
        catalog: EntitlementCatalog,
        meter: UsageMeter,
        *,
        tax_rates: TaxRateProvider | None = None,
        invoice_due_days: int = 0,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._meter = meter
        self._tax_rates = tax_rates
        self._due_after = timedelta(days=invoice_due_days)
        self._clock = clock

    # ------------------------------------------------------------------ #
    # Building
    # ------------------------------------------------------------------ #

    async def build_draft_invoice(
        self,
        subscription_id: str,
        period_start: datetime,
        period_end: datetime,
        *,
        extra_lines: Iterable[LineItem] = (),
    ) -> Invoice:
        """Assemble and store a draft invoice for ``[period_start, period_end)``.

        Lines, in order: the base plan charge (prorated linearly when the
        period differs from the plan's standard interval), one overage line
        per feature used beyond its allowance, any *extra_lines*, then one
        tax line per applicable rate computed on the pre-tax subtotal.

        Raises:
            InvalidPeriod: ``period_end`` is not after ``period_start``.
            SubscriptionNotFound: No such subscription.
            NoActivePlan: The plan cannot be resolved or is inactive.
            InvalidInvoiceTransition: The period already has a live invoice.
        """
        if period_end <= period_start:
            raise InvalidPeriod("period_end must be after period_start", code="invalid_period")

        async with self._store.serialized(subscription_id):
            subscription = await self._store.get_subscription(subscription_id)
            if subscription is None:
                raise SubscriptionNotFound(
                    f"Subscription {subscription_id!r} not found",
                    code="subscription_not_found",
                )
            plan = await self._catalog.get_plan(subscription.plan_id)
            if plan is None or not plan.active:
                raise NoActivePlan(
                    f"Plan {subscription.plan_id!r} is not available",
                    code="no_active_plan",
                    details={"subscription_id": subscription_id},
                )

            existing = await self._store.list_invoices(
                subscription_id=subscription_id,
                statuses=(InvoiceStatus.DRAFT, InvoiceStatus.OPEN, InvoiceStatus.PAID),
            )
            for invoice in existing:
                if invoice.period_start == period_start and invoice.period_end == period_end:
                    raise InvalidInvoiceTransition(
                        f"Period is already invoiced by {invoice.invoice_id}",
                        code="period_already_invoiced",
                        details={"invoice_id": invoice.invoice_id},
                    )

            lines = [self._base_line(plan, period_start, period_end)]
            lines.extend(await self._overage_lines(subscription_id, plan, period_start, period_end))
            lines.extend(extra_lines)
            lines.extend(await self._tax_lines(subscription, lines))

            invoice = Invoice(
                subscription_id=subscription_id,
                organization_id=subscription.organization_id,
                period_start=period_start,
                period_end=period_end,
                line_items=tuple(lines),
                currency=plan.currency,
                created_at=self._clock(),
            )
            await self._store.save_invoice(invoice)

        logger.info(
            "invoice_drafted",
            invoice_id=invoice.invoice_id,
            subscription_id=subscription_id,
            subtotal=invoice.subtotal,
            tax_total=invoice.tax_total,
            total=invoice.total,
        )
        return invoice

    def _base_line(self, plan: Plan, period_start: datetime, period_end: datetime) -> LineItem:
        standard_end = add_interval(period_start, plan.interval, plan.interval_count)
        fraction = elapsed_fraction(period_start, period_end, standard_end)
        if period_end == standard_end:
            return LineItem(
                description=f"{plan.name or plan.id} subscription",
                kind=LineItemKind.BASE,
                unit_amount=plan.base_price,
                amount=plan.base_price,
            )
        return LineItem(
            description=f"{plan.name or plan.id} subscription (prorated {fraction:.2%})",
            kind=LineItemKind.BASE,
            quantity=fraction,
            unit_amount=plan.base_price,
            amount=round_minor(plan.base_price * fraction),
        )

    async def _overage_lines(
        self,
        subscription_id: str,
        plan: Plan,
        period_start: datetime,
        period_end: datetime,
    ) -> list[LineItem]:
        lines: list[LineItem] = []
        for entitlement in plan.features:
            usage = await self._meter.measure_feature(
                subscription_id, entitlement, period_start, period_end
            )
            if usage.overage <= 0:
                continue
            lines.append(
                LineItem(
                    description=(
                        f"{entitlement.name or entitlement.id} overage "
                        f"({usage.overage:g} beyond {entitlement.included_units:g})"
                    ),
                    kind=LineItemKind.OVERAGE,
                    quantity=usage.overage,
                    unit_amount=entitlement.overage_rate,
                    amount=round_minor(usage.overage_amount),
                    feature_id=entitlement.id,
                )
            )
        return lines

    async def _tax_lines(
        self, subscription: Subscription, lines: list[LineItem]
    ) -> list[LineItem]:
        if self._tax_rates is None or subscription.jurisdiction is None:
            return []
        subtotal = sum(li.amount for li in lines if li.kind is not LineItemKind.TAX)
        if subtotal <= 0:
            return []
        rates = await self._tax_rates.lookup_rates(subscription.jurisdiction)
        return [
            LineItem(
                description=f"{rate.name} ({rate.percentage:g}%)",
                kind=LineItemKind.TAX,
                quantity=1.0,
                unit_amount=rate.percentage,
                tax_amount=percentage_of(subtotal, rate.percentage),
            )
            for rate in rates
            if rate.applies_to(subscription.jurisdiction)
        ]

    # ------------------------------------------------------------------ #
    # Status changes
    # ------------------------------------------------------------------ #

    async def finalize_invoice(self, invoice_id: str) -> Invoice:
        """Move a draft to ``open`` and fix its line items.

        Raises:
            AlreadyFinalized: The invoice is not a draft.
        """
        invoice = await self._require_invoice(invoice_id)
        async with self._store.serialized(invoice.subscription_id):
            invoice = await self._require_invoice(invoice_id)
            if invoice.status is not InvoiceStatus.DRAFT:
                raise AlreadyFinalized(
                    f"Invoice {invoice_id} is {invoice.status.value}, not draft",
                    code="already_finalized",
                    details={"status": invoice.status.value},
                )
            now = self._clock()
            invoice = await self._transition(
                invoice,
                InvoiceStatus.OPEN,
                finalized_at=now,
                due_date=now + self._due_after,
            )
        logger.info("invoice_finalized", invoice_id=invoice_id, total=invoice.total)
        return invoice

    async def add_adjustment(
        self,
        invoice_id: str,
        description: str,
        amount: int,
        *,
        tax_amount: int = 0,
    ) -> Invoice:
        """Append a credit (negative) or charge line to a draft or open invoice."""
        invoice = await self._require_invoice(invoice_id)
        async with self._store.serialized(invoice.subscription_id):
            invoice = await self._require_invoice(invoice_id)
            if invoice.status not in (InvoiceStatus.DRAFT, InvoiceStatus.OPEN):
                raise InvalidInvoiceTransition(
                    f"Cannot adjust invoice {invoice_id} in status {invoice.status.value}",
                    code="invoice_not_adjustable",
                )
            line = LineItem(
                description=description,
                kind=LineItemKind.ADJUSTMENT,
                unit_amount=amount,
                amount=amount,
                tax_amount=tax_amount,
            )
            invoice = invoice.model_copy(update={"line_items": (*invoice.line_items, line)})
            await self._store.save_invoice(invoice)
        logger.info("invoice_adjusted", invoice_id=invoice_id, amount=amount, total=invoice.total)
        return invoice

    async def void_invoice(self, invoice_id: str, reason: str = "") -> Invoice:
        """Void a draft or open invoice. Paid invoices can never be voided."""
        invoice = await self._require_invoice(invoice_id)
        async with self._store.serialized(invoice.subscription_id):
            invoice = await self._require_invoice(invoice_id)
            invoice = await self._transition(
                invoice, InvoiceStatus.VOID, voided_at=self._clock()
            )
        logger.info("invoice_voided", invoice_id=invoice_id, reason=reason)
        return invoice

    async def mark_paid(self, invoice_id: str, *, processor_ref: str | None = None) -> Invoice:
        """Record payment. Calling it on an already paid invoice is a no-op."""
        invoice = await self._require_invoice(invoice_id)
        async with self._store.serialized(invoice.subscription_id):
            invoice = await self._require_invoice(invoice_id)
            if invoice.status is InvoiceStatus.PAID:
                return invoice
            invoice = await self._transition(
                invoice,
                InvoiceStatus.PAID,
                paid_at=self._clock(),
                processor_charge_ref=processor_ref or invoice.processor_charge_ref,
            )
        logger.info("invoice_paid", invoice_id=invoice_id, processor_ref=processor_ref)
        return invoice

    async def mark_uncollectible(self, invoice_id: str) -> Invoice:
        invoice = await self._require_invoice(invoice_id)
        async with self._store.serialized(invoice.subscription_id):
            invoice = await self._require_invoice(invoice_id)
            invoice = await self._transition(
                invoice, InvoiceStatus.UNCOLLECTIBLE, uncollectible_at=self._clock()
            )
        logger.warning("invoice_uncollectible", invoice_id=invoice_id, total=invoice.total)
        return invoice

    async def get_invoice(self, invoice_id: str) -> Invoice:
        return await self._require_invoice(invoice_id)

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    async def _transition(
        self, invoice: Invoice, target: InvoiceStatus, **changes: Any
    ) -> Invoice:
        if not invoice.can_transition_to(target):
            raise InvalidInvoiceTransition(
                f"Invoice {invoice.invoice_id} cannot move from "
                f"{invoice.status.value} to {target.value}",
                code="invalid_invoice_transition",
                details={"from": invoice.status.value, "to": target.value},
            )
        updated = invoice.model_copy(update={"status": target, **changes})
        await self._store.save_invoice(updated)
        if invoice.status is InvoiceStatus.OPEN:
            await self._cancel_scheduled_attempts(updated)
        return updated

    async def _cancel_scheduled_attempts(self, invoice: Invoice) -> None:
        # An in-flight (pending) charge still settles through the collector.
        for attempt in await self._store.list_attempts(invoice.invoice_id):
            if attempt.outcome is not AttemptOutcome.SCHEDULED:
                continue
            await self._store.save_attempt(
                attempt.model_copy(
                    update={
                        "outcome": AttemptOutcome.CANCELED,
                        "failure_reason": f"invoice_{invoice.status.value}",
                        "completed_at": self._clock(),
                    }
                )
            )
            logger.info(
                "payment_attempt_canceled",
                invoice_id=invoice.invoice_id,
                attempt_number=attempt.attempt_number,
                invoice_status=invoice.status.value,
            )

    async def _require_invoice(self, invoice_id: str) -> Invoice:
        invoice = await self._store.get_invoice(invoice_id)
        if invoice is None:
            raise InvoiceNotFound(f"Invoice {invoice_id!r} not found", code="invoice_not_found")
        return invoice
