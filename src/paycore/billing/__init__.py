"""
Billing system module.

Recurring subscription billing:
- Plan catalog
- Subscription lifecycle (trials, plan changes, cancellation)
- Invoice generation and payment recording
- Dunning (failed-payment retries)
- Recurring billing scheduler
"""

from paycore.billing.exceptions import (
    BillingError,
    BillingValidationError,
    ConflictError,
    ConcurrentSubscriptionUpdateError,
    CustomerNotFoundError,
    DuplicateSubscriptionError,
    GatewayError,
    InvoiceAlreadyExistsError,
    InvoiceNotFoundError,
    InvoiceStateError,
    NotFoundError,
    PaymentDeclinedError,
    PaymentError,
    PlanNotFoundError,
    SubscriptionAlreadyCanceledError,
    SubscriptionCanceledError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
    UnsupportedIntervalError,
)
from paycore.billing.integration import BillingEngine, build_billing_engine

__all__ = [
    # Wiring
    "BillingEngine",
    "build_billing_engine",
    # Exceptions
    "BillingError",
    "BillingValidationError",
    "ConflictError",
    "ConcurrentSubscriptionUpdateError",
    "CustomerNotFoundError",
    "DuplicateSubscriptionError",
    "GatewayError",
    "InvoiceAlreadyExistsError",
    "InvoiceNotFoundError",
    "InvoiceStateError",
    "NotFoundError",
    "PaymentDeclinedError",
    "PaymentError",
    "PlanNotFoundError",
    "SubscriptionAlreadyCanceledError",
    "SubscriptionCanceledError",
    "SubscriptionNotFoundError",
    "SubscriptionStateError",
    "UnsupportedIntervalError",
]
