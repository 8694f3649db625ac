"""Shared billing fixtures: a manual clock, in-memory collaborators and a wired engine."""

from datetime import UTC, datetime

import pytest
import pytest_asyncio

from paycore.billing.catalog.models import PlanCreateRequest
from paycore.billing.config import (
    BillingConfig,
    GatewayConfig,
    SchedulerConfig,
    WebhookConfig,
)
from paycore.billing.core.clock import ManualClock
from paycore.billing.core.enums import BillingInterval
from paycore.billing.core.models import Customer, Plan
from paycore.billing.events import InMemoryWebhookNotifier
from paycore.billing.integration import BillingEngine, build_billing_engine
from paycore.billing.payments.gateway import SandboxPaymentGateway
from paycore.billing.storage.memory import InMemoryBillingRepository

START = datetime(2024, 1, 1, tzinfo=UTC)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture
def billing_config() -> BillingConfig:
    return BillingConfig(
        scheduler=SchedulerConfig(item_pause_seconds=0, claim_lease_seconds=900),
        gateway=GatewayConfig(charge_timeout_seconds=1.0),
        webhook=WebhookConfig(emit_timeout_seconds=1.0),
    )


@pytest.fixture
def repository() -> InMemoryBillingRepository:
    return InMemoryBillingRepository()


@pytest.fixture
def notifier() -> InMemoryWebhookNotifier:
    return InMemoryWebhookNotifier()


@pytest.fixture
def gateway() -> SandboxPaymentGateway:
    return SandboxPaymentGateway()


@pytest.fixture
def engine(repository, gateway, notifier, billing_config, clock) -> BillingEngine:
    return build_billing_engine(repository, gateway, notifier, config=billing_config, clock=clock)


@pytest_asyncio.fixture
async def customer(repository) -> Customer:
    customer = Customer(
        email="billing@example.com",
        name="Test Customer",
        default_payment_method_id="pm_card_visa",
    )
    await repository.create_customer(customer)
    return customer


@pytest_asyncio.fixture
async def declining_customer(repository) -> Customer:
    customer = Customer(
        email="declined@example.com",
        default_payment_method_id="pm_decline_insufficient_funds",
    )
    await repository.create_customer(customer)
    return customer


@pytest_asyncio.fixture
async def monthly_plan(engine) -> Plan:
    return await engine.catalog.create_plan(
        PlanCreateRequest(name="Pro Monthly", amount=999, interval=BillingInterval.MONTHLY)
    )


@pytest_asyncio.fixture
async def trial_plan(engine) -> Plan:
    return await engine.catalog.create_plan(
        PlanCreateRequest(
            name="Pro Trial",
            amount=1999,
            interval=BillingInterval.MONTHLY,
            trial_period_days=14,
        )
    )


@pytest_asyncio.fixture
async def setup_fee_plan(engine) -> Plan:
    return await engine.catalog.create_plan(
        PlanCreateRequest(
            name="Onboarded",
            amount=4900,
            interval=BillingInterval.YEARLY,
            setup_fee=2500,
        )
    )
