"""Subscription lifecycle and billing cycle arithmetic."""

from paycore.billing.subscriptions.cycles import (
    BillingCycleCalculator,
    interval_delta,
    next_billing_date,
)
from paycore.billing.subscriptions.models import SubscriptionUpdateRequest
from paycore.billing.subscriptions.service import SubscriptionLifecycleManager

__all__ = [
    "BillingCycleCalculator",
    "SubscriptionLifecycleManager",
    "SubscriptionUpdateRequest",
    "interval_delta",
    "next_billing_date",
]
