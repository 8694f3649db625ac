"""
Core billing domain models.

Plans, customers, subscriptions and invoices as pydantic models. Amounts are
integers in minor currency units (cents) throughout.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from paycore.billing.core.enums import (
    FINAL_INVOICE_STATUSES,
    LIVE_SUBSCRIPTION_STATUSES,
    BillingInterval,
    InvoiceKind,
    InvoiceStatus,
    SubscriptionStatus,
)
from paycore.billing.money_utils import validate_currency


def generate_id(prefix: str) -> str:
    """Short prefixed identifier, e.g. ``sub_3f2a9c0d1b7e44``."""
    return f"{prefix}_{uuid4().hex[:14]}"


def utcnow() -> datetime:
    return datetime.now(UTC)


class Plan(BaseModel):
    """Immutable billing plan."""

    model_config = ConfigDict(frozen=True)

    plan_id: str = Field(default_factory=lambda: generate_id("plan"), description="Plan ID")
    name: str = Field(min_length=1, max_length=255, description="Plan name")
    description: str | None = Field(None, description="Plan description")
    amount: int = Field(ge=0, description="Price per unit in minor currency units")
    currency: str = Field("USD", min_length=3, max_length=3, description="ISO 4217 code")
    interval: BillingInterval = Field(description="Billing interval")
    interval_count: int = Field(1, ge=1, description="Intervals per billing cycle")
    trial_period_days: int | None = Field(None, ge=0, description="Default trial length")
    setup_fee: int | None = Field(None, ge=0, description="One-time fee in minor units")
    active: bool = Field(True, description="Whether new subscriptions may use the plan")
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("currency")
    @classmethod
    def _validate_currency(cls, v: str) -> str:
        return validate_currency(v)

    def has_setup_fee(self) -> bool:
        return bool(self.setup_fee and self.setup_fee > 0)


class Customer(BaseModel):
    """Billing view of a customer."""

    customer_id: str = Field(default_factory=lambda: generate_id("cus"))
    email: str = Field(description="Billing email")
    name: str | None = None
    default_payment_method_id: str | None = Field(
        None, description="Payment method token used when a subscription has none"
    )
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class Subscription(BaseModel):
    """Customer subscription to a plan."""

    model_config = ConfigDict(validate_assignment=True)

    subscription_id: str = Field(default_factory=lambda: generate_id("sub"))
    customer_id: str
    plan_id: str
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    next_payment_date: datetime
    last_payment_date: datetime | None = None
    failed_payment_count: int = Field(0, ge=0)
    quantity: int = Field(1, ge=1)
    payment_method_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_live(self) -> bool:
        """Active or trialing."""
        return self.status in LIVE_SUBSCRIPTION_STATUSES

    def is_canceled(self) -> bool:
        return self.status == SubscriptionStatus.CANCELED

    def is_in_trial(self, now: datetime) -> bool:
        return (
            self.status == SubscriptionStatus.TRIALING
            and self.trial_end is not None
            and now < self.trial_end
        )


class Invoice(BaseModel):
    """Invoice for one billing point of a subscription."""

    model_config = ConfigDict(validate_assignment=True)

    invoice_id: str = Field(default_factory=lambda: generate_id("inv"))
    subscription_id: str
    customer_id: str
    kind: InvoiceKind = InvoiceKind.SUBSCRIPTION
    amount: int = Field(ge=0, description="Total in minor currency units")
    currency: str
    status: InvoiceStatus = InvoiceStatus.OPEN
    period_start: datetime
    period_end: datetime
    due_date: datetime
    attempt_count: int = Field(0, ge=0)
    next_payment_attempt: datetime | None = None
    last_payment_error: str | None = None
    transaction_ref: str | None = None
    paid_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_final(self) -> bool:
        """Paid or void invoices are immutable."""
        return self.status in FINAL_INVOICE_STATUSES

    def is_paid(self) -> bool:
        return self.status == InvoiceStatus.PAID
