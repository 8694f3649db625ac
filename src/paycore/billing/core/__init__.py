"""Core billing types: enums, domain models and clocks."""

from paycore.billing.core.clock import Clock, ManualClock, SystemClock
from paycore.billing.core.enums import (
    BILLABLE_SUBSCRIPTION_STATUSES,
    LIVE_SUBSCRIPTION_STATUSES,
    SUBSCRIPTION_TRANSITIONS,
    BillingInterval,
    InvoiceKind,
    InvoiceStatus,
    SubscriptionStatus,
    can_transition,
    can_transition_invoice,
)
from paycore.billing.core.models import Customer, Invoice, Plan, Subscription, generate_id

__all__ = [
    "BILLABLE_SUBSCRIPTION_STATUSES",
    "LIVE_SUBSCRIPTION_STATUSES",
    "SUBSCRIPTION_TRANSITIONS",
    "BillingInterval",
    "Clock",
    "Customer",
    "Invoice",
    "InvoiceKind",
    "InvoiceStatus",
    "ManualClock",
    "Plan",
    "Subscription",
    "SubscriptionStatus",
    "SystemClock",
    "can_transition",
    "can_transition_invoice",
    "generate_id",
]
