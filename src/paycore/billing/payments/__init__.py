"""Payment gateway collaborator and payment method resolution."""

from paycore.billing.payments.gateway import (
    ChargeDeclined,
    ChargeErrored,
    ChargeOutcome,
    ChargeSucceeded,
    PaymentGateway,
    PaymentMethodReference,
    PaymentMethodResolver,
    SandboxPaymentGateway,
    attempt_charge,
    failure_details,
    idempotency_key_for,
)

__all__ = [
    "ChargeDeclined",
    "ChargeErrored",
    "ChargeOutcome",
    "ChargeSucceeded",
    "PaymentGateway",
    "PaymentMethodReference",
    "PaymentMethodResolver",
    "SandboxPaymentGateway",
    "attempt_charge",
    "failure_details",
    "idempotency_key_for",
]
