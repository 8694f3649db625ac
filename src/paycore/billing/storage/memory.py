"""
In-memory billing repository.

Holds copies of every record so callers never share mutable state with the
store. Each method runs without awaiting in between reads and writes, which
makes the compare-and-set in ``claim_for_billing`` atomic on one event loop.
"""

from datetime import datetime

import structlog

from paycore.billing.core.enums import (
    BILLABLE_SUBSCRIPTION_STATUSES,
    InvoiceKind,
    SubscriptionStatus,
)
from paycore.billing.core.models import Customer, Invoice, Plan, Subscription
from paycore.billing.exceptions import (
    DuplicateSubscriptionError,
    InvoiceAlreadyExistsError,
    InvoiceNotFoundError,
    PlanNotFoundError,
    SubscriptionNotFoundError,
)

logger = structlog.get_logger(__name__)


class InMemoryBillingRepository:
    """Dictionary-backed implementation of ``BillingRepository``."""

    def __init__(self) -> None:
        self._plans: dict[str, Plan] = {}
        self._customers: dict[str, Customer] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self._invoices: dict[str, Invoice] = {}

    # ------------------------------------------------------------------ plans

    async def create_plan(self, plan: Plan) -> Plan:
        self._plans[plan.plan_id] = plan
        return plan

    async def get_plan(self, plan_id: str) -> Plan | None:
        return self._plans.get(plan_id)

    async def update_plan(self, plan: Plan) -> Plan:
        if plan.plan_id not in self._plans:
            raise PlanNotFoundError(f"Plan {plan.plan_id} not found", plan_id=plan.plan_id)
        self._plans[plan.plan_id] = plan
        return plan

    async def list_plans(self) -> list[Plan]:
        return sorted(self._plans.values(), key=lambda p: p.created_at)

    # -------------------------------------------------------------- customers

    async def create_customer(self, customer: Customer) -> Customer:
        self._customers[customer.customer_id] = customer.model_copy(deep=True)
        return customer

    async def get_customer(self, customer_id: str) -> Customer | None:
        customer = self._customers.get(customer_id)
        return customer.model_copy(deep=True) if customer else None

    # ---------------------------------------------------------- subscriptions

    def _check_live_duplicate(self, subscription: Subscription) -> None:
        if not subscription.is_live():
            return
        for other in self._subscriptions.values():
            if (
                other.subscription_id != subscription.subscription_id
                and other.customer_id == subscription.customer_id
                and other.plan_id == subscription.plan_id
                and other.is_live()
            ):
                raise DuplicateSubscriptionError(
                    "Customer already has an active subscription for this plan",
                    customer_id=subscription.customer_id,
                    plan_id=subscription.plan_id,
                )

    async def create_subscription(self, subscription: Subscription) -> Subscription:
        self._check_live_duplicate(subscription)
        self._subscriptions[subscription.subscription_id] = subscription.model_copy(deep=True)
        return subscription

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        subscription = self._subscriptions.get(subscription_id)
        return subscription.model_copy(deep=True) if subscription else None

    async def update_subscription(self, subscription: Subscription) -> Subscription:
        if subscription.subscription_id not in self._subscriptions:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription.subscription_id} not found",
                subscription_id=subscription.subscription_id,
            )
        self._check_live_duplicate(subscription)
        self._subscriptions[subscription.subscription_id] = subscription.model_copy(deep=True)
        return subscription

    async def update_subscription_if_unchanged(
        self,
        subscription: Subscription,
        expected_status: SubscriptionStatus,
        expected_updated_at: datetime,
    ) -> bool:
        current = self._subscriptions.get(subscription.subscription_id)
        if current is None:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription.subscription_id} not found",
                subscription_id=subscription.subscription_id,
            )
        if current.status != expected_status or current.updated_at != expected_updated_at:
            logger.debug(
                "Subscription changed since it was read",
                subscription_id=subscription.subscription_id,
            )
            return False
        self._check_live_duplicate(subscription)
        self._subscriptions[subscription.subscription_id] = subscription.model_copy(deep=True)
        return True

    async def get_customer_subscriptions(self, customer_id: str) -> list[Subscription]:
        return [
            s.model_copy(deep=True)
            for s in self._subscriptions.values()
            if s.customer_id == customer_id
        ]

    async def get_due_subscriptions(self, now: datetime) -> list[Subscription]:
        due = [
            s
            for s in self._subscriptions.values()
            if s.status in BILLABLE_SUBSCRIPTION_STATUSES and s.next_payment_date <= now
        ]
        due.sort(key=lambda s: s.next_payment_date)
        return [s.model_copy(deep=True) for s in due]

    async def get_trials_ending(self, now: datetime) -> list[Subscription]:
        ending = [
            s
            for s in self._subscriptions.values()
            if s.status == SubscriptionStatus.TRIALING
            and s.trial_end is not None
            and s.trial_end <= now
        ]
        ending.sort(key=lambda s: s.trial_end or now)
        return [s.model_copy(deep=True) for s in ending]

    async def claim_for_billing(
        self,
        subscription_id: str,
        expected_next_payment_date: datetime,
        lease_until: datetime,
    ) -> Subscription | None:
        current = self._subscriptions.get(subscription_id)
        if (
            current is None
            or current.status not in BILLABLE_SUBSCRIPTION_STATUSES
            or current.next_payment_date != expected_next_payment_date
        ):
            logger.debug("Billing claim lost", subscription_id=subscription_id)
            return None
        current.next_payment_date = lease_until
        return current.model_copy(deep=True)

    # --------------------------------------------------------------- invoices

    async def create_invoice(self, invoice: Invoice) -> Invoice:
        if invoice.kind == InvoiceKind.SUBSCRIPTION:
            existing = await self.get_invoice_for_period(
                invoice.subscription_id, invoice.period_start
            )
            if existing is not None:
                raise InvoiceAlreadyExistsError(
                    "Invoice already exists for this billing period",
                    subscription_id=invoice.subscription_id,
                    period_start=invoice.period_start.isoformat(),
                )
        self._invoices[invoice.invoice_id] = invoice.model_copy(deep=True)
        return invoice

    async def get_invoice(self, invoice_id: str) -> Invoice | None:
        invoice = self._invoices.get(invoice_id)
        return invoice.model_copy(deep=True) if invoice else None

    async def update_invoice(self, invoice: Invoice) -> Invoice:
        if invoice.invoice_id not in self._invoices:
            raise InvoiceNotFoundError(
                f"Invoice {invoice.invoice_id} not found", invoice_id=invoice.invoice_id
            )
        self._invoices[invoice.invoice_id] = invoice.model_copy(deep=True)
        return invoice

    async def get_invoice_for_period(
        self, subscription_id: str, period_start: datetime
    ) -> Invoice | None:
        for invoice in self._invoices.values():
            if (
                invoice.subscription_id == subscription_id
                and invoice.kind == InvoiceKind.SUBSCRIPTION
                and invoice.period_start == period_start
            ):
                return invoice.model_copy(deep=True)
        return None

    async def list_subscription_invoices(self, subscription_id: str) -> list[Invoice]:
        invoices = [i for i in self._invoices.values() if i.subscription_id == subscription_id]
        invoices.sort(key=lambda i: (i.period_start, i.created_at))
        return [i.model_copy(deep=True) for i in invoices]
