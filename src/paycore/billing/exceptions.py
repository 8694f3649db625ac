"""
Billing exceptions.

Each class fixes an ``error_code``, an HTTP-style ``status_code`` and a
default ``recovery_hint``; identifiers passed as keyword arguments become the
error's ``context``. ``to_dict`` gives the shape an API layer would return.

Payment errors are raised only inside the recurring billing path. The
scheduler turns them into invoice attempts, so they never reach callers of
the subscription service.
"""

from typing import Any


class BillingError(Exception):
    error_code = "BILLING_ERROR"
    status_code = 400
    recovery_hint: str | None = None

    def __init__(self, message: str, recovery_hint: str | None = None, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = {key: value for key, value in context.items() if value is not None}
        if recovery_hint is not None:
            self.recovery_hint = recovery_hint

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class BillingValidationError(BillingError):
    """Rejected input, e.g. a quantity below one."""

    error_code = "VALIDATION_ERROR"
    recovery_hint = "Fix the offending field and resend the request"


# Missing entities


class NotFoundError(BillingError):
    error_code = "NOT_FOUND"
    status_code = 404


class PlanNotFoundError(NotFoundError):
    error_code = "PLAN_NOT_FOUND"
    recovery_hint = "Check the plan ID; only active plans accept new subscriptions"


class CustomerNotFoundError(NotFoundError):
    error_code = "CUSTOMER_NOT_FOUND"
    recovery_hint = "Create the customer before subscribing them"


class SubscriptionNotFoundError(NotFoundError):
    error_code = "SUBSCRIPTION_NOT_FOUND"
    recovery_hint = "Check the subscription ID"


class InvoiceNotFoundError(NotFoundError):
    error_code = "INVOICE_NOT_FOUND"
    recovery_hint = "Check the invoice ID"


# Conflicts with current state


class ConflictError(BillingError):
    error_code = "CONFLICT"
    status_code = 409


class DuplicateSubscriptionError(ConflictError):
    """The customer already holds a trialing or active subscription to the plan."""

    error_code = "DUPLICATE_SUBSCRIPTION"
    recovery_hint = "Change or cancel the existing subscription"

    def __init__(self, message: str, customer_id: str, plan_id: str) -> None:
        super().__init__(message, customer_id=customer_id, plan_id=plan_id)


class SubscriptionCanceledError(ConflictError):
    error_code = "SUBSCRIPTION_CANCELED"
    recovery_hint = "Start a new subscription; canceled ones are read-only"


class SubscriptionAlreadyCanceledError(ConflictError):
    error_code = "SUBSCRIPTION_ALREADY_CANCELED"
    recovery_hint = "Nothing to do"


class InvoiceAlreadyExistsError(ConflictError):
    """A subscription invoice for the same ``period_start`` is already stored."""

    error_code = "INVOICE_ALREADY_EXISTS"
    recovery_hint = "Fetch and reuse the stored invoice for that period"


class SubscriptionStateError(ConflictError):
    error_code = "INVALID_SUBSCRIPTION_STATE"

    def __init__(self, message: str, current_state: str, requested_state: str) -> None:
        super().__init__(
            message,
            recovery_hint=f"A {current_state} subscription cannot become {requested_state}",
            current_state=current_state,
            requested_state=requested_state,
        )


class InvoiceStateError(ConflictError):
    error_code = "INVALID_INVOICE_STATE"
    recovery_hint = "Paid and void invoices cannot change"


class ConcurrentSubscriptionUpdateError(ConflictError):
    """Billing kept losing the conditional write to other subscription writers."""

    error_code = "CONCURRENT_SUBSCRIPTION_UPDATE"
    recovery_hint = "Retried when the billing claim lease expires"


class UnsupportedIntervalError(BillingError):
    """Interval outside daily/weekly/monthly/quarterly/yearly. Never retried."""

    error_code = "UNSUPPORTED_INTERVAL"
    status_code = 500
    recovery_hint = "Use one of: daily, weekly, monthly, quarterly, yearly"


# Charging


class PaymentError(BillingError):
    error_code = "PAYMENT_ERROR"
    status_code = 402


class PaymentDeclinedError(PaymentError):
    error_code = "PAYMENT_DECLINED"
    recovery_hint = "Ask the customer for a different payment method"

    def __init__(self, message: str, reason: str | None = None) -> None:
        self.reason = reason or message
        super().__init__(message, reason=self.reason)


class GatewayError(PaymentError):
    """The processor was unreachable or failed mid-charge."""

    error_code = "GATEWAY_ERROR"
    status_code = 502
    recovery_hint = "Retried on the dunning schedule"

    def __init__(self, message: str, transient: bool = True) -> None:
        self.transient = transient
        super().__init__(message, transient=transient)
