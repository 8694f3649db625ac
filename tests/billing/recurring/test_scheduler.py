"""
Tests for the recurring billing scheduler.

The clock is manual: each test creates subscriptions at 2024-01-01, moves the
clock and runs single ticks with ``run_once``.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from paycore.billing.catalog.models import PlanCreateRequest
from paycore.billing.config import (
    BillingConfig,
    DunningConfig,
    GatewayConfig,
    SchedulerConfig,
    WebhookConfig,
)
from paycore.billing.core.enums import InvoiceStatus, SubscriptionStatus
from paycore.billing.core.models import Customer
from paycore.billing.events import BillingEvents, InMemoryWebhookNotifier
from paycore.billing.exceptions import GatewayError, PaymentDeclinedError
from paycore.billing.integration import build_billing_engine
from paycore.billing.payments.gateway import (
    ChargeSucceeded,
    SandboxPaymentGateway,
)
from paycore.billing.recurring.scheduler import RecurringBillingScheduler
from paycore.billing.storage.memory import InMemoryBillingRepository
from paycore.billing.subscriptions.models import SubscriptionUpdateRequest
from paycore.billing.subscriptions.service import PAYMENT_METHOD_REQUIRED

pytestmark = pytest.mark.unit

JAN_1 = datetime(2024, 1, 1, tzinfo=UTC)
FEB_1 = datetime(2024, 2, 1, tzinfo=UTC)
MAR_1 = datetime(2024, 3, 1, tzinfo=UTC)


class RaisingGateway:
    """Gateway that raises ``error`` for every charge."""

    def __init__(self, error: Exception) -> None:
        self.error = error
        self.calls = 0

    async def charge(self, amount, currency, payment_method, idempotency_key):
        self.calls += 1
        raise self.error


class HangingGateway:
    async def charge(self, amount, currency, payment_method, idempotency_key):
        await asyncio.sleep(10)
        return ChargeSucceeded(transaction_id="txn_never")


class SelectiveGateway(SandboxPaymentGateway):
    """Sandbox gateway that blows up for one token."""

    async def charge(self, amount, currency, payment_method, idempotency_key):
        if payment_method.token == "pm_boom":
            raise RuntimeError("unexpected processor response")
        return await super().charge(amount, currency, payment_method, idempotency_key)


class InterferingGateway(SandboxPaymentGateway):
    """Sandbox gateway that awaits ``interfere`` once, while the charge is in flight."""

    interfere = None

    async def charge(self, amount, currency, payment_method, idempotency_key):
        hook, self.interfere = self.interfere, None
        if hook is not None:
            await hook()
        return await super().charge(amount, currency, payment_method, idempotency_key)


class BrokenNotifier:
    async def emit(self, event_type, payload):
        raise ConnectionError("webhook endpoint unreachable")


class YieldingRepository(InMemoryBillingRepository):
    """Yields to the loop after reading due subscriptions so two ticks interleave."""

    async def get_due_subscriptions(self, now):
        due = await super().get_due_subscriptions(now)
        await asyncio.sleep(0)
        return due


def _config(**gateway_overrides) -> BillingConfig:
    return BillingConfig(
        scheduler=SchedulerConfig(item_pause_seconds=0, tick_interval_seconds=0.01),
        gateway=GatewayConfig(**{"charge_timeout_seconds": 1.0, **gateway_overrides}),
        webhook=WebhookConfig(emit_timeout_seconds=1.0),
    )


class TestRecurringCharge:
    @pytest.mark.asyncio
    async def test_first_tick_charges_and_advances(
        self, engine, gateway, notifier, customer, monthly_plan
    ):
        subscription = await engine.subscriptions.create(
            customer.customer_id, monthly_plan.plan_id
        )

        summary = await engine.scheduler.run_once()

        assert summary.due == 1
        assert summary.charged == 1
        assert summary.failed == summary.errors == summary.claims_lost == 0
        assert summary.skipped is False

        [charge] = gateway.charges
        assert charge.amount == 999
        assert charge.token == "pm_card_visa"

        stored = await engine.subscriptions.get(subscription.subscription_id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.current_period_start == FEB_1
        assert stored.current_period_end == MAR_1
        assert stored.next_payment_date == MAR_1
        assert stored.last_payment_date == JAN_1

        [invoice] = await engine.invoices.list_for_subscription(subscription.subscription_id)
        assert invoice.status == InvoiceStatus.PAID
        assert charge.idempotency_key == f"{invoice.invoice_id}:attempt-1"
        assert invoice.transaction_ref == charge.outcome.transaction_id

        assert BillingEvents.SUBSCRIPTION_PAYMENT_SUCCEEDED in notifier.event_types
        [paid_event] = notifier.of_type(BillingEvents.INVOICE_PAYMENT_SUCCEEDED)
        assert paid_event["payment"]["amount"] == 999

    @pytest.mark.asyncio
    async def test_nothing_due_until_next_period(
        self, engine, gateway, clock, customer, monthly_plan
    ):
        subscription = await engine.subscriptions.create(
            customer.customer_id, monthly_plan.plan_id
        )
        await engine.scheduler.run_once()

        clock.set(FEB_1)
        assert (await engine.scheduler.run_once()).due == 0

        clock.set(MAR_1)
        summary = await engine.scheduler.run_once()
        assert summary.charged == 1
        assert len(gateway.successful_charges) == 2

        invoices = await engine.invoices.list_for_subscription(subscription.subscription_id)
        assert [i.period_start for i in invoices] == [JAN_1, FEB_1]
        assert all(i.status == InvoiceStatus.PAID for i in invoices)

        stored = await engine.subscriptions.get(subscription.subscription_id)
        assert stored.current_period_start == MAR_1

    @pytest.mark.asyncio
    async def test_already_paid_period_is_advanced_without_charging(
        self, engine, gateway, customer, monthly_plan
    ):
        subscription = await engine.subscriptions.create(
            customer.customer_id, monthly_plan.plan_id
        )
        [invoice] = await engine.invoices.list_for_subscription(subscription.subscription_id)
        await engine.invoices.record_success(invoice, "txn_offline")

        summary = await engine.scheduler.run_once()

        assert summary.advanced == 1
        assert gateway.charges == []
        stored = await engine.subscriptions.get(subscription.subscription_id)
        assert stored.current_period_start == FEB_1

    @pytest.mark.asyncio
    async def test_item_pause_between_subscriptions(
        self, engine, repository, gateway, notifier, clock, customer, monthly_plan, trial_plan
    ):
        await engine.subscriptions.create(customer.customer_id, monthly_plan.plan_id)
        await engine.subscriptions.create(
            customer.customer_id, trial_plan.plan_id, trial_override_days=0
        )
        pauses: list[float] = []

        async def record_sleep(seconds: float) -> None:
            pauses.append(seconds)

        scheduler = RecurringBillingScheduler(
            repository,
            engine.subscriptions,
            engine.invoices,
            gateway,
            notifier,
            config=BillingConfig(scheduler=SchedulerConfig(item_pause_seconds=0.5)),
            clock=clock,
            sleep=record_sleep,
        )

        summary = await scheduler.run_once()

        assert summary.charged == 2
        assert pauses == [0.5]


class TestDunning:
    @pytest.mark.asyncio
    async def test_decline_sequence_ends_unpaid(
        self, engine, gateway, notifier, clock, declining_customer, monthly_plan
    ):
        subscription = await engine.subscriptions.create(
            declining_customer.customer_id, monthly_plan.plan_id
        )
        sub_id = subscription.subscription_id

        first = await engine.scheduler.run_once()
        assert first.failed == 1
        stored = await engine.subscriptions.get(sub_id)
        assert stored.status == SubscriptionStatus.PAST_DUE
        assert stored.failed_payment_count == 1
        assert stored.next_payment_date == JAN_1 + timedelta(days=1)

        assert (await engine.scheduler.run_once()).due == 0

        clock.advance(days=1)
        second = await engine.scheduler.run_once()
        assert second.failed == 1
        stored = await engine.subscriptions.get(sub_id)
        assert stored.status == SubscriptionStatus.PAST_DUE
        assert stored.failed_payment_count == 2
        assert stored.next_payment_date == clock.now() + timedelta(days=3)

        clock.advance(days=3)
        third = await engine.scheduler.run_once()
        assert third.failed == 1
        stored = await engine.subscriptions.get(sub_id)
        assert stored.status == SubscriptionStatus.UNPAID
        assert stored.failed_payment_count == 3

        clock.advance(days=30)
        assert (await engine.scheduler.run_once()).due == 0

        [invoice] = await engine.invoices.list_for_subscription(sub_id)
        assert invoice.status == InvoiceStatus.OPEN
        assert invoice.attempt_count == 3
        assert invoice.next_payment_attempt is None
        assert [c.idempotency_key for c in gateway.charges] == [
            f"{invoice.invoice_id}:attempt-{n}" for n in (1, 2, 3)
        ]

        failures = notifier.of_type(BillingEvents.SUBSCRIPTION_PAYMENT_FAILED)
        assert [f["subscription"]["status"] for f in failures] == [
            "past_due",
            "past_due",
            "unpaid",
        ]
        assert failures[0]["payment"]["error"] == "card_declined"
        assert failures[0]["payment"]["transient"] is False

    @pytest.mark.asyncio
    async def test_recovers_after_payment_method_update(
        self, engine, clock, declining_customer, monthly_plan
    ):
        subscription = await engine.subscriptions.create(
            declining_customer.customer_id, monthly_plan.plan_id
        )
        await engine.scheduler.run_once()

        await engine.subscriptions.update(
            subscription.subscription_id,
            SubscriptionUpdateRequest(payment_method_id="pm_card_mastercard"),
        )
        clock.advance(days=1)
        summary = await engine.scheduler.run_once()

        assert summary.charged == 1
        stored = await engine.subscriptions.get(subscription.subscription_id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.failed_payment_count == 0
        assert stored.current_period_start == FEB_1
        assert stored.next_payment_date == MAR_1

        [invoice] = await engine.invoices.list_for_subscription(subscription.subscription_id)
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.attempt_count == 1

    @pytest.mark.asyncio
    async def test_missing_payment_method_counts_as_failure(
        self, engine, repository, gateway, notifier, monthly_plan
    ):
        customer = Customer(email="nocard@example.com")
        await repository.create_customer(customer)
        subscription = await engine.subscriptions.create(
            customer.customer_id, monthly_plan.plan_id
        )

        summary = await engine.scheduler.run_once()

        assert summary.failed == 1
        assert gateway.charges == []
        [invoice] = await engine.invoices.list_for_subscription(subscription.subscription_id)
        assert invoice.last_payment_error == PAYMENT_METHOD_REQUIRED
        stored = await engine.subscriptions.get(subscription.subscription_id)
        assert stored.status == SubscriptionStatus.PAST_DUE

    @pytest.mark.asyncio
    async def test_single_attempt_policy_goes_straight_to_unpaid(
        self, repository, gateway, notifier, clock, declining_customer, monthly_plan
    ):
        config = BillingConfig(
            scheduler=SchedulerConfig(item_pause_seconds=0),
            dunning=DunningConfig(max_attempts=1, retry_delays_days=[1]),
            gateway=GatewayConfig(charge_timeout_seconds=1.0),
        )
        billing = build_billing_engine(repository, gateway, notifier, config=config, clock=clock)
        subscription = await billing.subscriptions.create(
            declining_customer.customer_id, monthly_plan.plan_id
        )

        summary = await billing.scheduler.run_once()

        assert summary.failed == 1
        assert summary.errors == 0
        stored = await billing.subscriptions.get(subscription.subscription_id)
        assert stored.status == SubscriptionStatus.UNPAID
        assert stored.failed_payment_count == 1
        [invoice] = await billing.invoices.list_for_subscription(subscription.subscription_id)
        assert invoice.status == InvoiceStatus.OPEN
        assert invoice.next_payment_attempt is None

        clock.advance(hours=1)
        assert (await billing.scheduler.run_once()).due == 0
        clock.advance(days=30)
        assert (await billing.scheduler.run_once()).due == 0
        assert len(gateway.charges) == 1


class TestCancellationAndTrials:
    @pytest.mark.asyncio
    async def test_cancel_at_period_end_stops_renewal(
        self, engine, gateway, notifier, clock, customer, monthly_plan
    ):
        subscription = await engine.subscriptions.create(
            customer.customer_id, monthly_plan.plan_id
        )
        await engine.scheduler.run_once()
        await engine.subscriptions.cancel(subscription.subscription_id, at_period_end=True)

        clock.set(MAR_1)
        summary = await engine.scheduler.run_once()

        assert summary.canceled == 1
        assert summary.charged == 0
        assert len(gateway.charges) == 1
        stored = await engine.subscriptions.get(subscription.subscription_id)
        assert stored.status == SubscriptionStatus.CANCELED
        assert stored.canceled_at == MAR_1

        reasons = [e["reason"] for e in notifier.of_type(BillingEvents.SUBSCRIPTION_CANCELED)]
        assert reasons == ["at_period_end", "period_end"]
        assert len(await engine.invoices.list_for_subscription(subscription.subscription_id)) == 1

    @pytest.mark.asyncio
    async def test_trial_converts_and_is_charged_in_same_tick(
        self, engine, gateway, clock, customer, trial_plan
    ):
        subscription = await engine.subscriptions.create(customer.customer_id, trial_plan.plan_id)

        clock.advance(days=10)
        early = await engine.scheduler.run_once()
        assert early.trials_converted == 0
        assert early.due == 0

        clock.set(JAN_1 + timedelta(days=14))
        summary = await engine.scheduler.run_once()

        assert summary.trials_converted == 1
        assert summary.charged == 1
        [charge] = gateway.charges
        assert charge.amount == 1999

        stored = await engine.subscriptions.get(subscription.subscription_id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.current_period_start == datetime(2024, 2, 15, tzinfo=UTC)
        assert stored.current_period_end == datetime(2024, 3, 15, tzinfo=UTC)

        [invoice] = await engine.invoices.list_for_subscription(subscription.subscription_id)
        assert invoice.period_start == JAN_1 + timedelta(days=14)

    @pytest.mark.asyncio
    async def test_trial_with_pending_cancel_is_not_charged(
        self, engine, gateway, clock, customer, trial_plan
    ):
        subscription = await engine.subscriptions.create(customer.customer_id, trial_plan.plan_id)
        await engine.subscriptions.cancel(subscription.subscription_id, at_period_end=True)

        clock.advance(days=14)
        summary = await engine.scheduler.run_once()

        assert summary.trials_converted == 1
        assert summary.due == 0
        assert gateway.charges == []
        stored = await engine.subscriptions.get(subscription.subscription_id)
        assert stored.status == SubscriptionStatus.CANCELED

    @pytest.mark.asyncio
    async def test_pending_cancel_keeps_retrying_within_the_period(
        self, engine, gateway, clock, declining_customer, monthly_plan
    ):
        subscription = await engine.subscriptions.create(
            declining_customer.customer_id, monthly_plan.plan_id
        )
        await engine.scheduler.run_once()
        await engine.subscriptions.cancel(subscription.subscription_id, at_period_end=True)

        clock.advance(days=1)
        summary = await engine.scheduler.run_once()

        assert summary.canceled == 0
        assert summary.failed == 1
        assert len(gateway.charges) == 2
        stored = await engine.subscriptions.get(subscription.subscription_id)
        assert stored.status == SubscriptionStatus.PAST_DUE
        assert stored.cancel_at_period_end is True
        assert stored.failed_payment_count == 2
        [invoice] = await engine.invoices.list_for_subscription(subscription.subscription_id)
        assert invoice.attempt_count == 2

    @pytest.mark.asyncio
    async def test_pending_cancel_after_recovered_payment_waits_for_period_end(
        self, engine, gateway, notifier, clock, declining_customer, monthly_plan
    ):
        subscription = await engine.subscriptions.create(
            declining_customer.customer_id, monthly_plan.plan_id
        )
        sub_id = subscription.subscription_id
        await engine.scheduler.run_once()
        await engine.subscriptions.cancel(sub_id, at_period_end=True)
        await engine.subscriptions.update(
            sub_id, SubscriptionUpdateRequest(payment_method_id="pm_card_mastercard")
        )

        clock.advance(days=1)
        summary = await engine.scheduler.run_once()

        assert summary.charged == 1
        stored = await engine.subscriptions.get(sub_id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.failed_payment_count == 0
        assert stored.current_period_start == JAN_1
        assert stored.next_payment_date == FEB_1

        clock.advance(days=10)
        assert (await engine.scheduler.run_once()).due == 0

        clock.set(FEB_1)
        summary = await engine.scheduler.run_once()

        assert summary.canceled == 1
        assert summary.charged == 0
        assert len(gateway.successful_charges) == 1
        stored = await engine.subscriptions.get(sub_id)
        assert stored.status == SubscriptionStatus.CANCELED
        assert stored.canceled_at == FEB_1
        reasons = [e["reason"] for e in notifier.of_type(BillingEvents.SUBSCRIPTION_CANCELED)]
        assert reasons == ["at_period_end", "period_end"]


class TestWritesDuringCharge:
    @pytest.mark.asyncio
    async def test_cancel_during_successful_charge_stays_canceled(
        self, repository, notifier, clock, customer, monthly_plan
    ):
        gateway = InterferingGateway()
        billing = build_billing_engine(
            repository, gateway, notifier, config=_config(), clock=clock
        )
        subscription = await billing.subscriptions.create(
            customer.customer_id, monthly_plan.plan_id
        )
        sub_id = subscription.subscription_id
        gateway.interfere = lambda: billing.subscriptions.cancel(sub_id)

        summary = await billing.scheduler.run_once()

        assert summary.charged == 1
        assert summary.errors == 0
        stored = await billing.subscriptions.get(sub_id)
        assert stored.status == SubscriptionStatus.CANCELED
        assert stored.canceled_at == JAN_1
        assert stored.current_period_start == JAN_1
        [invoice] = await billing.invoices.list_for_subscription(sub_id)
        assert invoice.status == InvoiceStatus.PAID

        clock.set(MAR_1)
        assert (await billing.scheduler.run_once()).due == 0
        assert len(gateway.charges) == 1

    @pytest.mark.asyncio
    async def test_cancel_during_declined_charge_stays_canceled(
        self, repository, notifier, clock, declining_customer, monthly_plan
    ):
        gateway = InterferingGateway()
        billing = build_billing_engine(
            repository, gateway, notifier, config=_config(), clock=clock
        )
        subscription = await billing.subscriptions.create(
            declining_customer.customer_id, monthly_plan.plan_id
        )
        sub_id = subscription.subscription_id
        gateway.interfere = lambda: billing.subscriptions.cancel(sub_id)

        summary = await billing.scheduler.run_once()

        assert summary.failed == 1
        assert summary.errors == 0
        stored = await billing.subscriptions.get(sub_id)
        assert stored.status == SubscriptionStatus.CANCELED
        assert stored.failed_payment_count == 0
        [invoice] = await billing.invoices.list_for_subscription(sub_id)
        assert invoice.attempt_count == 1

        clock.advance(days=1)
        assert (await billing.scheduler.run_once()).due == 0

    @pytest.mark.asyncio
    async def test_pending_cancel_set_during_charge_is_kept(
        self, repository, notifier, clock, customer, monthly_plan
    ):
        gateway = InterferingGateway()
        billing = build_billing_engine(
            repository, gateway, notifier, config=_config(), clock=clock
        )
        subscription = await billing.subscriptions.create(
            customer.customer_id, monthly_plan.plan_id
        )
        sub_id = subscription.subscription_id
        gateway.interfere = lambda: billing.subscriptions.cancel(sub_id, at_period_end=True)

        await billing.scheduler.run_once()

        stored = await billing.subscriptions.get(sub_id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.cancel_at_period_end is True
        assert stored.current_period_start == JAN_1
        assert stored.next_payment_date == FEB_1
        assert stored.last_payment_date == JAN_1

        clock.set(FEB_1)
        summary = await billing.scheduler.run_once()

        assert summary.canceled == 1
        assert len(gateway.charges) == 1
        stored = await billing.subscriptions.get(sub_id)
        assert stored.status == SubscriptionStatus.CANCELED

    @pytest.mark.asyncio
    async def test_payment_method_change_during_charge_is_kept(
        self, repository, notifier, clock, customer, monthly_plan
    ):
        gateway = InterferingGateway()
        billing = build_billing_engine(
            repository, gateway, notifier, config=_config(), clock=clock
        )
        subscription = await billing.subscriptions.create(
            customer.customer_id, monthly_plan.plan_id
        )
        sub_id = subscription.subscription_id
        gateway.interfere = lambda: billing.subscriptions.update(
            sub_id, SubscriptionUpdateRequest(payment_method_id="pm_card_mastercard")
        )

        summary = await billing.scheduler.run_once()

        assert summary.charged == 1
        stored = await billing.subscriptions.get(sub_id)
        assert stored.payment_method_id == "pm_card_mastercard"
        assert stored.current_period_start == FEB_1
        assert stored.next_payment_date == MAR_1


class TestGatewayFailures:
    @pytest.mark.asyncio
    async def test_timeout_is_transient_failure(self, repository, clock, customer, monthly_plan):
        notifier = InMemoryWebhookNotifier()
        slow = build_billing_engine(
            repository,
            HangingGateway(),
            notifier,
            config=_config(charge_timeout_seconds=0.01),
            clock=clock,
        )
        subscription = await slow.subscriptions.create(customer.customer_id, monthly_plan.plan_id)

        summary = await slow.scheduler.run_once()

        assert summary.failed == 1
        [invoice] = await slow.invoices.list_for_subscription(subscription.subscription_id)
        assert invoice.last_payment_error == "gateway_timeout"
        assert invoice.metadata["last_failure_transient"] is True
        [event] = notifier.of_type(BillingEvents.INVOICE_PAYMENT_FAILED)
        assert event["payment"]["transient"] is True

    @pytest.mark.parametrize(
        ("error", "reason", "transient"),
        [
            (PaymentDeclinedError("Card declined", reason="expired_card"), "expired_card", False),
            (GatewayError("processor unavailable"), "processor unavailable", True),
            (GatewayError("invalid merchant", transient=False), "invalid merchant", False),
        ],
    )
    @pytest.mark.asyncio
    async def test_raised_payment_errors_become_failures(
        self, repository, notifier, clock, customer, monthly_plan, error, reason, transient
    ):
        gateway = RaisingGateway(error)
        billing = build_billing_engine(
            repository, gateway, notifier, config=_config(), clock=clock
        )
        subscription = await billing.subscriptions.create(
            customer.customer_id, monthly_plan.plan_id
        )

        summary = await billing.scheduler.run_once()

        assert summary.failed == 1
        assert summary.errors == 0
        assert gateway.calls == 1
        [invoice] = await billing.invoices.list_for_subscription(subscription.subscription_id)
        assert invoice.last_payment_error == reason
        assert invoice.metadata["last_failure_transient"] is transient

    @pytest.mark.asyncio
    async def test_unexpected_error_is_isolated(
        self, repository, notifier, clock, customer, monthly_plan
    ):
        gateway = SelectiveGateway()
        billing = build_billing_engine(
            repository, gateway, notifier, config=_config(), clock=clock
        )
        broken = Customer(email="boom@example.com", default_payment_method_id="pm_boom")
        await repository.create_customer(broken)
        await billing.subscriptions.create(broken.customer_id, monthly_plan.plan_id)
        healthy = await billing.subscriptions.create(customer.customer_id, monthly_plan.plan_id)

        summary = await billing.scheduler.run_once()

        assert summary.due == 2
        assert summary.errors == 1
        assert summary.charged == 1
        stored = await billing.subscriptions.get(healthy.subscription_id)
        assert stored.current_period_start == FEB_1

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_fail_billing(
        self, repository, gateway, clock, customer, monthly_plan
    ):
        billing = build_billing_engine(
            repository, gateway, BrokenNotifier(), config=_config(), clock=clock
        )
        subscription = await billing.subscriptions.create(
            customer.customer_id, monthly_plan.plan_id
        )

        summary = await billing.scheduler.run_once()

        assert summary.charged == 1
        assert summary.errors == 0
        stored = await billing.subscriptions.get(subscription.subscription_id)
        assert stored.current_period_start == FEB_1


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_two_schedulers_charge_once(self, clock, notifier):
        repository = YieldingRepository()
        gateway = SandboxPaymentGateway()
        first = build_billing_engine(repository, gateway, notifier, config=_config(), clock=clock)
        second = build_billing_engine(
            repository, gateway, notifier, config=_config(), clock=clock
        )
        customer = Customer(email="race@example.com", default_payment_method_id="pm_card_visa")
        await repository.create_customer(customer)
        plan = await first.catalog.create_plan(
            PlanCreateRequest(name="Race", amount=1500, interval="monthly")
        )
        await first.subscriptions.create(customer.customer_id, plan.plan_id)

        results = await asyncio.gather(first.scheduler.run_once(), second.scheduler.run_once())

        assert sum(r.charged for r in results) == 1
        assert sum(r.claims_lost for r in results) == 1
        assert len(gateway.charges) == 1

    @pytest.mark.asyncio
    async def test_retry_after_lost_bookkeeping_reuses_the_charge(
        self, engine, gateway, clock, monkeypatch, customer, monthly_plan
    ):
        subscription = await engine.subscriptions.create(
            customer.customer_id, monthly_plan.plan_id
        )
        record_success = engine.invoices.record_success

        async def crash(*args, **kwargs):
            raise ConnectionError("database went away")

        monkeypatch.setattr(engine.invoices, "record_success", crash)
        assert (await engine.scheduler.run_once()).errors == 1

        monkeypatch.setattr(engine.invoices, "record_success", record_success)
        assert (await engine.scheduler.run_once()).due == 0

        clock.advance(minutes=16)
        summary = await engine.scheduler.run_once()

        assert summary.charged == 1
        [charge] = gateway.charges
        [invoice] = await engine.invoices.list_for_subscription(subscription.subscription_id)
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.transaction_ref == charge.outcome.transaction_id
        assert charge.idempotency_key == f"{invoice.invoice_id}:attempt-1"
        stored = await engine.subscriptions.get(subscription.subscription_id)
        assert stored.current_period_start == FEB_1

    @pytest.mark.asyncio
    async def test_overlapping_tick_is_skipped(
        self, repository, notifier, clock, customer, monthly_plan
    ):
        gateway = SandboxPaymentGateway(latency_seconds=0.05)
        billing = build_billing_engine(
            repository, gateway, notifier, config=_config(), clock=clock
        )
        await billing.subscriptions.create(customer.customer_id, monthly_plan.plan_id)

        results = await asyncio.gather(billing.scheduler.run_once(), billing.scheduler.run_once())

        assert [r.skipped for r in results] == [False, True]
        assert results[0].charged == 1
        assert len(gateway.charges) == 1

    @pytest.mark.asyncio
    async def test_start_and_stop(
        self, repository, gateway, notifier, clock, customer, monthly_plan
    ):
        billing = build_billing_engine(
            repository, gateway, notifier, config=_config(), clock=clock
        )
        await billing.subscriptions.create(customer.customer_id, monthly_plan.plan_id)

        billing.scheduler.start()
        billing.scheduler.start()
        assert billing.scheduler.is_running
        await asyncio.sleep(0.05)
        await billing.scheduler.stop()

        assert not billing.scheduler.is_running
        assert len(gateway.charges) == 1
