from billing_lifecycle.invoicing.builder import InvoiceBuilder
from billing_lifecycle.invoicing.models import INVOICE_TRANSITIONS, Invoice, LineItem

__all__ = ["INVOICE_TRANSITIONS", "Invoice", "InvoiceBuilder", "LineItem"]
