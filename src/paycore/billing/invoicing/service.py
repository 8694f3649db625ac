"""
Invoice engine.

Creates one invoice per subscription billing point (plus setup-fee invoices)
and records payment outcomes onto them. Paid and void invoices are final.
"""

from typing import Any

import structlog

from paycore.billing.config import BillingConfig
from paycore.billing.core.clock import Clock, SystemClock
from paycore.billing.core.enums import InvoiceKind, InvoiceStatus, can_transition_invoice
from paycore.billing.core.models import Invoice, Plan, Subscription
from paycore.billing.dunning.policy import DunningPolicy
from paycore.billing.exceptions import (
    InvoiceAlreadyExistsError,
    InvoiceNotFoundError,
    InvoiceStateError,
)
from paycore.billing.money_utils import format_minor_units
from paycore.billing.storage.repository import BillingRepository

logger = structlog.get_logger(__name__)


class InvoiceEngine:
    """Invoice creation and payment bookkeeping."""

    def __init__(
        self,
        repository: BillingRepository,
        dunning_policy: DunningPolicy | None = None,
        config: BillingConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.repository = repository
        self.config = config or BillingConfig()
        self.clock = clock or SystemClock()
        self.dunning_policy = dunning_policy or DunningPolicy.from_config(
            self.config.dunning, self.clock
        )

    # ------------------------------------------------------------------ create

    async def create_for_period(self, subscription: Subscription, plan: Plan) -> Invoice:
        """
        Create the invoice for the subscription's current billing period.

        Raises:
            InvoiceAlreadyExistsError: An invoice for this period already exists
        """
        existing = await self.repository.get_invoice_for_period(
            subscription.subscription_id, subscription.current_period_start
        )
        if existing is not None:
            raise InvoiceAlreadyExistsError(
                "Invoice already exists for this billing period",
                subscription_id=subscription.subscription_id,
                period_start=subscription.current_period_start.isoformat(),
            )

        amount = plan.amount * subscription.quantity
        invoice = self._build(
            subscription,
            plan,
            kind=InvoiceKind.SUBSCRIPTION,
            amount=amount,
            metadata={"plan_id": plan.plan_id, "quantity": subscription.quantity},
        )
        await self.repository.create_invoice(invoice)

        logger.info(
            "Invoice created",
            invoice_id=invoice.invoice_id,
            subscription_id=subscription.subscription_id,
            period_start=invoice.period_start.isoformat(),
            amount=invoice.metadata["amount_display"],
        )
        return invoice

    async def get_or_create_for_period(self, subscription: Subscription, plan: Plan) -> Invoice:
        """Reuse the period invoice if one exists (retries, replays), otherwise create it."""
        existing = await self.repository.get_invoice_for_period(
            subscription.subscription_id, subscription.current_period_start
        )
        if existing is not None:
            return existing
        return await self.create_for_period(subscription, plan)

    async def create_setup_fee_invoice(self, subscription: Subscription, plan: Plan) -> Invoice:
        """One-time invoice for ``plan.setup_fee``, outside the recurring cycle."""
        invoice = self._build(
            subscription,
            plan,
            kind=InvoiceKind.SETUP_FEE,
            amount=plan.setup_fee or 0,
            metadata={"plan_id": plan.plan_id},
        )
        await self.repository.create_invoice(invoice)

        logger.info(
            "Setup fee invoice created",
            invoice_id=invoice.invoice_id,
            subscription_id=subscription.subscription_id,
            amount=invoice.metadata["amount_display"],
        )
        return invoice

    def _build(
        self,
        subscription: Subscription,
        plan: Plan,
        kind: InvoiceKind,
        amount: int,
        metadata: dict[str, Any],
    ) -> Invoice:
        now = self.clock.now()
        return Invoice(
            subscription_id=subscription.subscription_id,
            customer_id=subscription.customer_id,
            kind=kind,
            amount=amount,
            currency=plan.currency,
            status=InvoiceStatus.OPEN,
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            due_date=now,
            attempt_count=0,
            metadata={
                **metadata,
                "amount_display": format_minor_units(
                    amount, plan.currency, self.config.currency.locale
                ),
            },
            created_at=now,
            updated_at=now,
        )

    # ----------------------------------------------------------------- outcomes

    def _ensure_can_move(self, invoice: Invoice, target: InvoiceStatus) -> None:
        if invoice.is_final() or not can_transition_invoice(invoice.status, target):
            raise InvoiceStateError(
                f"Invoice {invoice.invoice_id} is {invoice.status.value}",
                invoice_id=invoice.invoice_id,
                current_state=invoice.status.value,
            )

    async def record_success(self, invoice: Invoice, transaction_ref: str) -> Invoice:
        """Mark the invoice paid. The caller advances the subscription afterwards."""
        self._ensure_can_move(invoice, InvoiceStatus.PAID)

        now = self.clock.now()
        invoice.status = InvoiceStatus.PAID
        invoice.paid_at = now
        invoice.transaction_ref = transaction_ref
        invoice.next_payment_attempt = None
        invoice.updated_at = now
        await self.repository.update_invoice(invoice)

        logger.info(
            "Invoice paid",
            invoice_id=invoice.invoice_id,
            transaction_ref=transaction_ref,
            attempts=invoice.attempt_count + 1,
        )
        return invoice

    async def record_failure(
        self, invoice: Invoice, reason: str, transient: bool = False
    ) -> Invoice:
        """
        Count a failed charge attempt.

        The invoice stays open. While attempts remain, ``next_payment_attempt``
        is set from the dunning schedule; once they are exhausted it is cleared
        and the caller drives the subscription to unpaid.
        """
        self._ensure_can_move(invoice, InvoiceStatus.OPEN)

        now = self.clock.now()
        invoice.attempt_count += 1
        invoice.last_payment_error = reason
        if self.dunning_policy.should_retry(invoice.attempt_count):
            invoice.next_payment_attempt = self.dunning_policy.next_retry_date(
                invoice.attempt_count
            )
        else:
            invoice.next_payment_attempt = None
        invoice.metadata = {**invoice.metadata, "last_failure_transient": transient}
        invoice.updated_at = now
        await self.repository.update_invoice(invoice)

        logger.warning(
            "Invoice payment failed",
            invoice_id=invoice.invoice_id,
            attempt=invoice.attempt_count,
            reason=reason,
            transient=transient,
            next_attempt=(
                invoice.next_payment_attempt.isoformat() if invoice.next_payment_attempt else None
            ),
        )
        return invoice

    async def mark_uncollectible(self, invoice: Invoice) -> Invoice:
        return await self._move(invoice, InvoiceStatus.UNCOLLECTIBLE)

    async def void(self, invoice: Invoice) -> Invoice:
        return await self._move(invoice, InvoiceStatus.VOID)

    async def _move(self, invoice: Invoice, target: InvoiceStatus) -> Invoice:
        self._ensure_can_move(invoice, target)
        invoice.status = target
        invoice.next_payment_attempt = None
        invoice.updated_at = self.clock.now()
        await self.repository.update_invoice(invoice)

        logger.info("Invoice status changed", invoice_id=invoice.invoice_id, status=target.value)
        return invoice

    # ------------------------------------------------------------------- reads

    async def get(self, invoice_id: str) -> Invoice:
        invoice = await self.repository.get_invoice(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found", invoice_id=invoice_id)
        return invoice

    async def list_for_subscription(self, subscription_id: str) -> list[Invoice]:
        return await self.repository.list_subscription_invoices(subscription_id)
