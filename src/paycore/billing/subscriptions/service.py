"""
Subscription lifecycle manager.

Owns every subscription state change: creation (with optional trial and
setup fee), updates, cancellation, and the scheduler-driven period advance,
dunning and trial conversion. Status changes go through the transition table
in ``core.enums``.
"""

from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

import structlog

from paycore.billing.catalog.service import PlanCatalog
from paycore.billing.config import BillingConfig
from paycore.billing.core.clock import Clock, SystemClock
from paycore.billing.core.enums import SubscriptionStatus, can_transition
from paycore.billing.core.models import Customer, Plan, Subscription
from paycore.billing.dunning.policy import DunningPolicy
from paycore.billing.events import (
    WebhookNotifier,
    emit_payment_failed,
    emit_payment_succeeded,
    emit_subscription_canceled,
    emit_subscription_created,
    emit_subscription_updated,
)
from paycore.billing.exceptions import (
    BillingValidationError,
    ConcurrentSubscriptionUpdateError,
    CustomerNotFoundError,
    DuplicateSubscriptionError,
    SubscriptionAlreadyCanceledError,
    SubscriptionCanceledError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
)
from paycore.billing.invoicing.service import InvoiceEngine
from paycore.billing.payments.gateway import (
    ChargeSucceeded,
    PaymentGateway,
    PaymentMethodResolver,
    attempt_charge,
    failure_details,
)
from paycore.billing.storage.repository import BillingRepository
from paycore.billing.subscriptions.cycles import BillingCycleCalculator
from paycore.billing.subscriptions.models import SubscriptionUpdateRequest

logger = structlog.get_logger(__name__)

PAYMENT_METHOD_REQUIRED = "payment_method_required"

# Conditional writes tried before a scheduler transition gives up
SETTLE_ATTEMPTS = 3


class SubscriptionLifecycleManager:
    """
    Subscription state machine.

    ``create``, ``update``, ``cancel``, ``get`` and ``list_for_customer`` are
    the caller-facing API. ``advance_period``, ``apply_dunning`` and
    ``end_trial`` are driven by the recurring billing scheduler.
    """

    def __init__(
        self,
        repository: BillingRepository,
        catalog: PlanCatalog,
        invoice_engine: InvoiceEngine,
        gateway: PaymentGateway,
        notifier: WebhookNotifier,
        config: BillingConfig | None = None,
        clock: Clock | None = None,
        calculator: BillingCycleCalculator | None = None,
        dunning_policy: DunningPolicy | None = None,
        payment_method_resolver: PaymentMethodResolver | None = None,
    ):
        self.repository = repository
        self.catalog = catalog
        self.invoice_engine = invoice_engine
        self.gateway = gateway
        self.notifier = notifier
        self.config = config or BillingConfig()
        self.clock = clock or SystemClock()
        self.calculator = calculator or BillingCycleCalculator()
        self.dunning_policy = dunning_policy or DunningPolicy.from_config(
            self.config.dunning, self.clock
        )
        self.payment_method_resolver = payment_method_resolver or PaymentMethodResolver()

    @property
    def _emit_timeout(self) -> float:
        return self.config.webhook.emit_timeout_seconds

    # ================================================================ reads

    async def get(self, subscription_id: str) -> Subscription:
        subscription = await self.repository.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription_id} not found", subscription_id=subscription_id
            )
        return subscription

    async def list_for_customer(self, customer_id: str) -> list[Subscription]:
        return await self.repository.get_customer_subscriptions(customer_id)

    # =============================================================== create

    async def create(
        self,
        customer_id: str,
        plan_id: str,
        quantity: int = 1,
        payment_method_id: str | None = None,
        trial_override_days: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Subscription:
        """
        Subscribe a customer to a plan.

        With a trial the subscription starts ``trialing`` and nothing is
        invoiced until the trial ends. Without one it starts ``active``, the
        first period invoice is created now and charged by the next scheduler
        tick, and a plan setup fee is charged immediately.

        Raises:
            BillingValidationError: Invalid quantity or trial length
            PlanNotFoundError: Plan missing or retired
            CustomerNotFoundError: Customer missing
            DuplicateSubscriptionError: Customer already has a live subscription to the plan
        """
        if quantity < 1:
            raise BillingValidationError("Quantity must be at least 1", field="quantity")
        if trial_override_days is not None and trial_override_days < 0:
            raise BillingValidationError(
                "Trial days cannot be negative", field="trial_override_days"
            )

        plan = await self.catalog.get_active_plan(plan_id)
        customer = await self.repository.get_customer(customer_id)
        if customer is None:
            raise CustomerNotFoundError(
                f"Customer {customer_id} not found", customer_id=customer_id
            )
        await self._ensure_no_live_subscription(customer_id, plan_id)

        now = self.clock.now()
        trial_days = (
            trial_override_days
            if trial_override_days is not None
            else (plan.trial_period_days or 0)
        )

        if trial_days > 0:
            trial_end = now + timedelta(days=trial_days)
            subscription = Subscription(
                customer_id=customer_id,
                plan_id=plan.plan_id,
                status=SubscriptionStatus.TRIALING,
                current_period_start=now,
                current_period_end=trial_end,
                trial_start=now,
                trial_end=trial_end,
                next_payment_date=trial_end,
                quantity=quantity,
                payment_method_id=payment_method_id,
                metadata=metadata or {},
                created_at=now,
                updated_at=now,
            )
        else:
            period_start, period_end = self.calculator.period_for(
                now, plan.interval, plan.interval_count
            )
            subscription = Subscription(
                customer_id=customer_id,
                plan_id=plan.plan_id,
                status=SubscriptionStatus.ACTIVE,
                current_period_start=period_start,
                current_period_end=period_end,
                next_payment_date=now,
                quantity=quantity,
                payment_method_id=payment_method_id,
                metadata=metadata or {},
                created_at=now,
                updated_at=now,
            )

        await self.repository.create_subscription(subscription)

        if subscription.status == SubscriptionStatus.ACTIVE:
            await self.invoice_engine.create_for_period(subscription, plan)
            if plan.has_setup_fee():
                await self._charge_setup_fee(subscription, plan, customer)

        logger.info(
            "Subscription created",
            subscription_id=subscription.subscription_id,
            customer_id=customer_id,
            plan_id=plan.plan_id,
            status=subscription.status.value,
            trial_days=trial_days,
        )
        await emit_subscription_created(self.notifier, subscription, timeout=self._emit_timeout)
        return subscription

    async def _ensure_no_live_subscription(
        self, customer_id: str, plan_id: str, exclude_id: str | None = None
    ) -> None:
        for existing in await self.repository.get_customer_subscriptions(customer_id):
            if (
                existing.plan_id == plan_id
                and existing.is_live()
                and existing.subscription_id != exclude_id
            ):
                raise DuplicateSubscriptionError(
                    "Customer already has an active subscription for this plan",
                    customer_id=customer_id,
                    plan_id=plan_id,
                )

    async def _charge_setup_fee(
        self, subscription: Subscription, plan: Plan, customer: Customer
    ) -> None:
        """One-time setup fee charge. Failures are recorded, never raised."""
        try:
            invoice = await self.invoice_engine.create_setup_fee_invoice(subscription, plan)
            payment_method = self.payment_method_resolver.resolve(subscription, customer)
            if payment_method is None:
                invoice = await self.invoice_engine.record_failure(
                    invoice, PAYMENT_METHOD_REQUIRED
                )
                await emit_payment_failed(
                    self.notifier, None, invoice, PAYMENT_METHOD_REQUIRED,
                    timeout=self._emit_timeout,
                )
                return

            outcome = await attempt_charge(
                self.gateway,
                invoice.amount,
                invoice.currency,
                payment_method,
                idempotency_key=f"setup:{subscription.subscription_id}",
                timeout=self.config.gateway.charge_timeout_seconds,
            )
            if isinstance(outcome, ChargeSucceeded):
                invoice = await self.invoice_engine.record_success(
                    invoice, outcome.transaction_id
                )
                await emit_payment_succeeded(
                    self.notifier, None, invoice, outcome.transaction_id,
                    timeout=self._emit_timeout,
                )
            else:
                reason, transient = failure_details(outcome)
                invoice = await self.invoice_engine.record_failure(invoice, reason, transient)
                await emit_payment_failed(
                    self.notifier, None, invoice, reason, transient=transient,
                    timeout=self._emit_timeout,
                )
        except Exception:
            logger.exception(
                "Setup fee charge failed", subscription_id=subscription.subscription_id
            )

    # =============================================================== update

    async def update(
        self, subscription_id: str, patch: SubscriptionUpdateRequest
    ) -> Subscription:
        """
        Apply a partial update.

        A plan change recomputes the next billing date from the current period
        start with the new plan's interval. The partially used period is not
        prorated.
        """
        subscription = await self.get(subscription_id)
        if subscription.is_canceled():
            raise SubscriptionCanceledError(
                "Cannot update a canceled subscription", subscription_id=subscription_id
            )

        changes = patch.model_dump(exclude_unset=True, exclude_none=True)

        new_plan_id = changes.get("plan_id")
        if new_plan_id and new_plan_id != subscription.plan_id:
            new_plan = await self.catalog.get_active_plan(new_plan_id)
            if subscription.is_live():
                await self._ensure_no_live_subscription(
                    subscription.customer_id, new_plan.plan_id, exclude_id=subscription_id
                )
            subscription.plan_id = new_plan.plan_id
            # A trial keeps its end date; the new interval applies once it converts
            if subscription.status != SubscriptionStatus.TRIALING:
                next_date = self.calculator.next_billing_date(
                    subscription.current_period_start, new_plan.interval, new_plan.interval_count
                )
                subscription.current_period_end = next_date
                subscription.next_payment_date = next_date
        else:
            changes.pop("plan_id", None)

        if "quantity" in changes:
            subscription.quantity = changes["quantity"]
        if "payment_method_id" in changes:
            subscription.payment_method_id = changes["payment_method_id"]
        if "cancel_at_period_end" in changes:
            subscription.cancel_at_period_end = changes["cancel_at_period_end"]
        if "metadata" in changes:
            subscription.metadata = {**subscription.metadata, **changes["metadata"]}

        subscription.updated_at = self.clock.now()
        await self.repository.update_subscription(subscription)

        logger.info(
            "Subscription updated",
            subscription_id=subscription_id,
            changed_fields=sorted(changes),
        )
        await emit_subscription_updated(
            self.notifier,
            subscription,
            timeout=self._emit_timeout,
            changed_fields=sorted(changes),
        )
        return subscription

    # =============================================================== cancel

    async def cancel(self, subscription_id: str, at_period_end: bool = False) -> Subscription:
        """
        Cancel now, or flag the subscription so the scheduler cancels it at the
        next period boundary instead of renewing.
        """
        subscription = await self.get(subscription_id)
        if subscription.is_canceled():
            raise SubscriptionAlreadyCanceledError(
                "Subscription is already canceled", subscription_id=subscription_id
            )

        now = self.clock.now()
        if at_period_end:
            subscription.cancel_at_period_end = True
        else:
            self._transition(subscription, SubscriptionStatus.CANCELED)
            subscription.canceled_at = now
        subscription.updated_at = now
        await self.repository.update_subscription(subscription)

        logger.info(
            "Subscription canceled",
            subscription_id=subscription_id,
            at_period_end=at_period_end,
        )
        await emit_subscription_canceled(
            self.notifier,
            subscription,
            timeout=self._emit_timeout,
            reason="at_period_end" if at_period_end else "immediate",
        )
        return subscription

    # ======================================================= scheduler-only

    def _transition(self, subscription: Subscription, target: SubscriptionStatus) -> None:
        if not can_transition(subscription.status, target):
            raise SubscriptionStateError(
                f"Subscription {subscription.subscription_id} cannot move "
                f"from {subscription.status.value} to {target.value}",
                current_state=subscription.status.value,
                requested_state=target.value,
            )
        subscription.status = target

    async def _finalize_cancel(self, subscription: Subscription, reason: str) -> Subscription:
        now = self.clock.now()
        self._transition(subscription, SubscriptionStatus.CANCELED)
        subscription.canceled_at = now
        subscription.updated_at = now
        await self.repository.update_subscription(subscription)
        await self._announce_scheduled_cancel(subscription, reason)
        return subscription

    async def _announce_scheduled_cancel(self, subscription: Subscription, reason: str) -> None:
        logger.info(
            "Subscription canceled at period end",
            subscription_id=subscription.subscription_id,
            reason=reason,
        )
        await emit_subscription_canceled(
            self.notifier, subscription, timeout=self._emit_timeout, reason=reason
        )

    async def _settle(
        self,
        subscription_id: str,
        apply: Callable[[Subscription], Awaitable[None]],
    ) -> tuple[Subscription, bool]:
        """
        Re-read the subscription, let ``apply`` change it, and write it back
        only if nothing else wrote in between. A subscription canceled in the
        meantime is returned untouched. The second item tells whether the
        write happened.
        """
        for _ in range(SETTLE_ATTEMPTS):
            current = await self.get(subscription_id)
            if current.is_canceled():
                logger.info(
                    "Subscription canceled while billing was in flight",
                    subscription_id=subscription_id,
                )
                return current, False
            expected_status, expected_updated_at = current.status, current.updated_at
            await apply(current)
            if await self.repository.update_subscription_if_unchanged(
                current, expected_status, expected_updated_at
            ):
                return current, True
        raise ConcurrentSubscriptionUpdateError(
            f"Subscription {subscription_id} changed on every settle attempt",
            subscription_id=subscription_id,
        )

    async def finalize_period_end_cancel(self, subscription: Subscription) -> Subscription:
        """Cancel a ``cancel_at_period_end`` subscription whose period is over."""
        now = self.clock.now()

        async def _cancel(current: Subscription) -> None:
            self._transition(current, SubscriptionStatus.CANCELED)
            current.canceled_at = now
            current.updated_at = now

        canceled, written = await self._settle(subscription.subscription_id, _cancel)
        if written:
            await self._announce_scheduled_cancel(canceled, reason="period_end")
        return canceled

    async def advance_period(self, subscription: Subscription) -> Subscription:
        """
        Settle a paid period: back to ``active`` with the failure count reset.

        Normally the subscription moves on to the next period. With
        ``cancel_at_period_end`` set there is no next period: once the period
        is over it is canceled, and before that it stays in the paid period
        and comes due again at its end for the scheduler to cancel.
        """
        now = self.clock.now()
        moved: list[datetime] = []

        async def _advance(current: Subscription) -> None:
            moved.clear()
            if current.cancel_at_period_end and now >= current.current_period_end:
                self._transition(current, SubscriptionStatus.CANCELED)
                current.canceled_at = now
            else:
                self._transition(current, SubscriptionStatus.ACTIVE)
                current.failed_payment_count = 0
                if current.cancel_at_period_end:
                    current.next_payment_date = current.current_period_end
                else:
                    plan = await self.catalog.get_plan(current.plan_id)
                    period_start = current.current_period_end
                    period_end = self.calculator.next_billing_date(
                        period_start, plan.interval, plan.interval_count
                    )
                    current.current_period_start = period_start
                    current.current_period_end = period_end
                    current.next_payment_date = period_end
                    moved.extend((period_start, period_end))
            current.last_payment_date = now
            current.updated_at = now

        advanced, written = await self._settle(subscription.subscription_id, _advance)
        if not written:
            return advanced
        if advanced.is_canceled():
            await self._announce_scheduled_cancel(advanced, reason="period_end")
        elif moved:
            logger.info(
                "Subscription period advanced",
                subscription_id=advanced.subscription_id,
                period_start=moved[0].isoformat(),
                period_end=moved[1].isoformat(),
            )
        else:
            logger.info(
                "Period paid, cancel scheduled for its end",
                subscription_id=advanced.subscription_id,
                period_end=advanced.current_period_end.isoformat(),
            )
        return advanced

    async def apply_dunning(
        self,
        subscription: Subscription,
        attempt_number: int,
        next_retry_at: datetime | None = None,
    ) -> Subscription:
        """Record the n-th failed charge and apply the dunning verdict."""
        verdict = self.dunning_policy.verdict(attempt_number)
        now = self.clock.now()

        async def _dun(current: Subscription) -> None:
            self._transition(current, verdict)
            current.failed_payment_count = attempt_number
            if verdict == SubscriptionStatus.PAST_DUE and next_retry_at is not None:
                current.next_payment_date = next_retry_at
            current.updated_at = now

        dunned, written = await self._settle(subscription.subscription_id, _dun)
        if written:
            log = logger.warning if verdict == SubscriptionStatus.UNPAID else logger.info
            log(
                "Dunning applied",
                subscription_id=dunned.subscription_id,
                attempt=attempt_number,
                status=verdict.value,
                next_retry_at=next_retry_at.isoformat() if next_retry_at else None,
            )
        return dunned

    async def end_trial(self, subscription: Subscription) -> Subscription:
        """
        Convert an ended trial. The first paid period starts at ``trial_end``
        and is due immediately, so the same scheduler tick charges it.
        """
        # Re-read: another tick may have converted it already
        subscription = await self.get(subscription.subscription_id)
        if subscription.status != SubscriptionStatus.TRIALING:
            raise SubscriptionStateError(
                f"Subscription {subscription.subscription_id} is not trialing",
                current_state=subscription.status.value,
                requested_state=SubscriptionStatus.ACTIVE.value,
            )
        if subscription.cancel_at_period_end:
            return await self._finalize_cancel(subscription, reason="trial_end")

        plan = await self.catalog.get_plan(subscription.plan_id)
        period_start = subscription.trial_end or self.clock.now()
        period_end = self.calculator.next_billing_date(
            period_start, plan.interval, plan.interval_count
        )

        self._transition(subscription, SubscriptionStatus.ACTIVE)
        subscription.current_period_start = period_start
        subscription.current_period_end = period_end
        subscription.next_payment_date = period_start
        subscription.updated_at = self.clock.now()
        await self.repository.update_subscription(subscription)

        logger.info(
            "Trial ended",
            subscription_id=subscription.subscription_id,
            period_end=period_end.isoformat(),
        )
        await emit_subscription_updated(
            self.notifier,
            subscription,
            timeout=self._emit_timeout,
            previous_status=SubscriptionStatus.TRIALING.value,
        )
        return subscription
