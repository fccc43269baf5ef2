"""Invoice data models.

Amounts are integer minor units (cents). Per-unit rates may be fractional;
line amounts are rounded once, when the line is built.
"""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field

from billing_lifecycle.core.constants import InvoiceStatus, LineItemKind

# Forward-only status graph. ``void`` is reachable from draft or open only.
INVOICE_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.OPEN, InvoiceStatus.VOID}),
    InvoiceStatus.OPEN: frozenset(
        {InvoiceStatus.PAID, InvoiceStatus.VOID, InvoiceStatus.UNCOLLECTIBLE}
    ),
    InvoiceStatus.UNCOLLECTIBLE: frozenset({InvoiceStatus.PAID}),
    InvoiceStatus.PAID: frozenset(),
    InvoiceStatus.VOID: frozenset(),
}


class LineItem(BaseModel):
    """A single line on an invoice. Never edited once created."""

    model_config = ConfigDict(frozen=True)

    description: str
    kind: LineItemKind
    quantity: float = 1.0
    unit_amount: float = 0.0
    amount: int = 0
    """Pre-tax amount of the line. Negative for credits."""
    tax_amount: int = 0
    feature_id: str | None = None


class Invoice(BaseModel):
    """One billing document for a subscription's period."""

    invoice_id: str = Field(default_factory=lambda: f"in_{uuid4().hex[:12]}")
    subscription_id: str
    organization_id: str
    period_start: datetime
    period_end: datetime
    status: InvoiceStatus = InvoiceStatus.DRAFT
    line_items: tuple[LineItem, ...] = ()
    currency: str = "USD"
    due_date: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finalized_at: datetime | None = None
    paid_at: datetime | None = None
    voided_at: datetime | None = None
    uncollectible_at: datetime | None = None
    processor_charge_ref: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def subtotal(self) -> int:
        """Sum of every non-tax line amount."""
        return sum(li.amount for li in self.line_items if li.kind is not LineItemKind.TAX)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def tax_total(self) -> int:
        return sum(li.tax_amount for li in self.line_items)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total(self) -> int:
        return self.subtotal + self.tax_total

    @property
    def amount_due(self) -> int:
        if self.status in (InvoiceStatus.PAID, InvoiceStatus.VOID):
            return 0
        return max(0, self.total)

    def can_transition_to(self, target: InvoiceStatus) -> bool:
        return target in INVOICE_TRANSITIONS[self.status]
