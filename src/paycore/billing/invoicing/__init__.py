"""Invoice creation and payment recording."""

from paycore.billing.invoicing.service import InvoiceEngine

__all__ = ["InvoiceEngine"]
