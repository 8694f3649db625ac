"""
Recurring billing scheduler.

Each tick converts ended trials, then walks the due subscriptions one at a
time: claim the billing slot, get or create the period invoice, charge it and
record the outcome on the invoice and the subscription. A failure on one
subscription is logged and counted; the sweep always continues.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from uuid import uuid4

import structlog
from pydantic import BaseModel, Field

from paycore.billing.config import BillingConfig
from paycore.billing.core.clock import Clock, SystemClock
from paycore.billing.core.models import Invoice, Subscription
from paycore.billing.events import (
    WebhookNotifier,
    emit_payment_failed,
    emit_payment_succeeded,
)
from paycore.billing.exceptions import SubscriptionStateError
from paycore.billing.invoicing.service import InvoiceEngine
from paycore.billing.payments.gateway import (
    ChargeDeclined,
    ChargeOutcome,
    ChargeSucceeded,
    PaymentGateway,
    PaymentMethodResolver,
    attempt_charge,
    failure_details,
    idempotency_key_for,
)
from paycore.billing.storage.repository import BillingRepository
from paycore.billing.subscriptions.service import (
    PAYMENT_METHOD_REQUIRED,
    SubscriptionLifecycleManager,
)

logger = structlog.get_logger(__name__)

# Per-subscription results of one tick
CHARGED = "charged"
FAILED = "failed"
CANCELED = "canceled"
ADVANCED = "advanced"
CLAIM_LOST = "claim_lost"


class BillingRunSummary(BaseModel):
    """What one scheduler tick did."""

    started_at: datetime
    finished_at: datetime | None = None
    skipped: bool = Field(False, description="Another tick was already running")
    trials_converted: int = 0
    due: int = 0
    charged: int = 0
    failed: int = 0
    canceled: int = 0
    advanced: int = Field(0, description="Period already paid, advanced without charging")
    claims_lost: int = 0
    errors: int = 0


class RecurringBillingScheduler:
    """
    Drives recurring billing on a fixed tick.

    ``run_once`` performs a single sweep; ``start``/``stop`` run it every
    ``scheduler.tick_interval_seconds`` on an asyncio task. Ticks never
    overlap within one scheduler, and the repository claim keeps separate
    schedulers from charging the same billing period twice.
    """

    def __init__(
        self,
        repository: BillingRepository,
        lifecycle: SubscriptionLifecycleManager,
        invoice_engine: InvoiceEngine,
        gateway: PaymentGateway,
        notifier: WebhookNotifier,
        config: BillingConfig | None = None,
        clock: Clock | None = None,
        payment_method_resolver: PaymentMethodResolver | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.repository = repository
        self.lifecycle = lifecycle
        self.invoice_engine = invoice_engine
        self.gateway = gateway
        self.notifier = notifier
        self.config = config or BillingConfig()
        self.clock = clock or SystemClock()
        self.payment_method_resolver = payment_method_resolver or PaymentMethodResolver()
        self._sleep = sleep

        self._tick_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    # ============================================================ lifecycle

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start ticking in the background. Calling it twice is a no-op."""
        if self.is_running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_forever(), name="recurring-billing")
        logger.info(
            "Recurring billing scheduler started",
            tick_interval_seconds=self.config.scheduler.tick_interval_seconds,
        )

    async def stop(self) -> None:
        """Stop ticking; an in-flight tick is allowed to finish."""
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        logger.info("Recurring billing scheduler stopped")

    async def _run_forever(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Billing tick failed")
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self.config.scheduler.tick_interval_seconds,
                )
            except TimeoutError:
                pass

    # ================================================================= tick

    async def run_once(self) -> BillingRunSummary:
        """Run one billing sweep, or skip if a sweep is already in progress."""
        if self._tick_lock.locked():
            now = self.clock.now()
            logger.warning("Billing tick already in progress, skipping")
            return BillingRunSummary(started_at=now, finished_at=now, skipped=True)

        async with self._tick_lock:
            with structlog.contextvars.bound_contextvars(billing_run_id=uuid4().hex[:12]):
                return await self._sweep()

    async def _sweep(self) -> BillingRunSummary:
        summary = BillingRunSummary(started_at=self.clock.now())
        await self._convert_trials(summary)

        due = await self.repository.get_due_subscriptions(self.clock.now())
        summary.due = len(due)

        for index, subscription in enumerate(due):
            if index and self.config.scheduler.item_pause_seconds:
                await self._sleep(self.config.scheduler.item_pause_seconds)
            try:
                result = await self._process(subscription)
            except Exception:
                summary.errors += 1
                logger.exception(
                    "Recurring billing failed for subscription",
                    subscription_id=subscription.subscription_id,
                )
                continue

            if result == CHARGED:
                summary.charged += 1
            elif result == FAILED:
                summary.failed += 1
            elif result == CANCELED:
                summary.canceled += 1
            elif result == ADVANCED:
                summary.advanced += 1
            elif result == CLAIM_LOST:
                summary.claims_lost += 1

        summary.finished_at = self.clock.now()
        logger.info("Billing tick finished", **summary.model_dump(mode="json"))
        return summary

    async def _convert_trials(self, summary: BillingRunSummary) -> None:
        for subscription in await self.repository.get_trials_ending(self.clock.now()):
            try:
                await self.lifecycle.end_trial(subscription)
                summary.trials_converted += 1
            except SubscriptionStateError:
                logger.info(
                    "Trial already converted, skipping",
                    subscription_id=subscription.subscription_id,
                )
            except Exception:
                summary.errors += 1
                logger.exception(
                    "Trial conversion failed", subscription_id=subscription.subscription_id
                )

    async def _process(self, observed: Subscription) -> str:
        now = self.clock.now()
        subscription = await self.repository.claim_for_billing(
            observed.subscription_id,
            expected_next_payment_date=observed.next_payment_date,
            lease_until=now + timedelta(seconds=self.config.scheduler.claim_lease_seconds),
        )
        if subscription is None:
            logger.info(
                "Billing slot already claimed, skipping",
                subscription_id=observed.subscription_id,
            )
            return CLAIM_LOST

        if subscription.cancel_at_period_end and now >= subscription.current_period_end:
            await self.lifecycle.finalize_period_end_cancel(subscription)
            return CANCELED

        plan = await self.lifecycle.catalog.get_plan(subscription.plan_id)
        invoice = await self.invoice_engine.get_or_create_for_period(subscription, plan)
        if invoice.is_final():
            # Paid (or voided) by an earlier attempt whose bookkeeping did not finish
            await self.lifecycle.advance_period(subscription)
            return ADVANCED

        outcome = await self._charge(subscription, invoice)
        timeout = self.config.webhook.emit_timeout_seconds

        if isinstance(outcome, ChargeSucceeded):
            invoice = await self.invoice_engine.record_success(invoice, outcome.transaction_id)
            subscription = await self.lifecycle.advance_period(subscription)
            await emit_payment_succeeded(
                self.notifier, subscription, invoice, outcome.transaction_id, timeout=timeout
            )
            return CHARGED

        reason, transient = failure_details(outcome)
        invoice = await self.invoice_engine.record_failure(invoice, reason, transient)
        subscription = await self.lifecycle.apply_dunning(
            subscription, invoice.attempt_count, invoice.next_payment_attempt
        )
        await emit_payment_failed(
            self.notifier, subscription, invoice, reason, transient=transient, timeout=timeout
        )
        return FAILED

    async def _charge(self, subscription: Subscription, invoice: Invoice) -> ChargeOutcome:
        customer = await self.repository.get_customer(subscription.customer_id)
        payment_method = self.payment_method_resolver.resolve(subscription, customer)
        if payment_method is None:
            logger.warning(
                "No payment method for subscription",
                subscription_id=subscription.subscription_id,
            )
            return ChargeDeclined(reason=PAYMENT_METHOD_REQUIRED)

        key = idempotency_key_for(invoice)
        logger.debug(
            "Charging invoice",
            invoice_id=invoice.invoice_id,
            idempotency_key=key,
            payment_method_source=payment_method.source,
        )
        return await attempt_charge(
            self.gateway,
            invoice.amount,
            invoice.currency,
            payment_method,
            idempotency_key=key,
            timeout=self.config.gateway.charge_timeout_seconds,
        )
