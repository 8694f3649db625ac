"""
Storage contract for the billing engine.

Services depend on this protocol only; ``InMemoryBillingRepository`` and
``SqlAlchemyBillingRepository`` implement it.
"""

from datetime import datetime
from typing import Protocol

from paycore.billing.core.enums import SubscriptionStatus
from paycore.billing.core.models import Customer, Invoice, Plan, Subscription


class BillingRepository(Protocol):
    """Persistence for plans, customers, subscriptions and invoices."""

    # Plans
    async def create_plan(self, plan: Plan) -> Plan: ...  # pragma: no cover
    async def get_plan(self, plan_id: str) -> Plan | None: ...  # pragma: no cover
    async def update_plan(self, plan: Plan) -> Plan: ...  # pragma: no cover
    async def list_plans(self) -> list[Plan]: ...  # pragma: no cover

    # Customers
    async def create_customer(self, customer: Customer) -> Customer: ...  # pragma: no cover
    async def get_customer(self, customer_id: str) -> Customer | None: ...  # pragma: no cover

    # Subscriptions
    async def create_subscription(
        self, subscription: Subscription
    ) -> Subscription: ...  # pragma: no cover

    async def get_subscription(
        self, subscription_id: str
    ) -> Subscription | None: ...  # pragma: no cover

    async def update_subscription(
        self, subscription: Subscription
    ) -> Subscription: ...  # pragma: no cover

    async def update_subscription_if_unchanged(
        self,
        subscription: Subscription,
        expected_status: SubscriptionStatus,
        expected_updated_at: datetime,
    ) -> bool:
        """
        Write ``subscription`` only while the stored row still has the given
        status and ``updated_at``. Returns False, writing nothing, when another
        writer got there first.
        """
        ...  # pragma: no cover

    async def get_customer_subscriptions(
        self, customer_id: str
    ) -> list[Subscription]: ...  # pragma: no cover

    async def get_due_subscriptions(
        self, now: datetime
    ) -> list[Subscription]: ...  # pragma: no cover

    async def get_trials_ending(self, now: datetime) -> list[Subscription]: ...  # pragma: no cover

    async def claim_for_billing(
        self,
        subscription_id: str,
        expected_next_payment_date: datetime,
        lease_until: datetime,
    ) -> Subscription | None:
        """
        Atomically move ``next_payment_date`` from the observed value to
        ``lease_until``. Returns the claimed subscription, or None when another
        worker changed it first.
        """
        ...  # pragma: no cover

    # Invoices
    async def create_invoice(self, invoice: Invoice) -> Invoice: ...  # pragma: no cover
    async def get_invoice(self, invoice_id: str) -> Invoice | None: ...  # pragma: no cover
    async def update_invoice(self, invoice: Invoice) -> Invoice: ...  # pragma: no cover

    async def get_invoice_for_period(
        self, subscription_id: str, period_start: datetime
    ) -> Invoice | None: ...  # pragma: no cover

    async def list_subscription_invoices(
        self, subscription_id: str
    ) -> list[Invoice]: ...  # pragma: no cover
