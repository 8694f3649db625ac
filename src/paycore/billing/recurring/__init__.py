"""Recurring billing scheduler."""

from paycore.billing.recurring.scheduler import BillingRunSummary, RecurringBillingScheduler

__all__ = ["BillingRunSummary", "RecurringBillingScheduler"]
