"""
Billing integration.

Wires the catalog, invoice engine, lifecycle manager and scheduler around one
repository, gateway and notifier. Callers build an engine explicitly; nothing
here is a process-wide singleton.
"""

from dataclasses import dataclass

import structlog

from paycore.billing.catalog.service import PlanCatalog
from paycore.billing.config import BillingConfig
from paycore.billing.core.clock import Clock, SystemClock
from paycore.billing.dunning.policy import DunningPolicy
from paycore.billing.events import WebhookNotifier
from paycore.billing.invoicing.service import InvoiceEngine
from paycore.billing.payments.gateway import PaymentGateway, PaymentMethodResolver
from paycore.billing.recurring.scheduler import RecurringBillingScheduler
from paycore.billing.storage.repository import BillingRepository
from paycore.billing.subscriptions.cycles import BillingCycleCalculator
from paycore.billing.subscriptions.service import SubscriptionLifecycleManager

logger = structlog.get_logger(__name__)


@dataclass
class BillingEngine:
    """The billing services sharing one set of collaborators."""

    repository: BillingRepository
    catalog: PlanCatalog
    invoices: InvoiceEngine
    subscriptions: SubscriptionLifecycleManager
    scheduler: RecurringBillingScheduler
    config: BillingConfig
    clock: Clock


def build_billing_engine(
    repository: BillingRepository,
    gateway: PaymentGateway,
    notifier: WebhookNotifier,
    config: BillingConfig | None = None,
    clock: Clock | None = None,
) -> BillingEngine:
    """Create every billing service with shared config, clock and dunning policy."""
    config = config or BillingConfig.from_settings()
    clock = clock or SystemClock()
    dunning_policy = DunningPolicy.from_config(config.dunning, clock)
    resolver = PaymentMethodResolver()

    catalog = PlanCatalog(repository, notifier, config=config, clock=clock)
    invoices = InvoiceEngine(repository, dunning_policy=dunning_policy, config=config, clock=clock)
    subscriptions = SubscriptionLifecycleManager(
        repository,
        catalog,
        invoices,
        gateway,
        notifier,
        config=config,
        clock=clock,
        calculator=BillingCycleCalculator(),
        dunning_policy=dunning_policy,
        payment_method_resolver=resolver,
    )
    scheduler = RecurringBillingScheduler(
        repository,
        subscriptions,
        invoices,
        gateway,
        notifier,
        config=config,
        clock=clock,
        payment_method_resolver=resolver,
    )

    logger.debug(
        "Billing engine built",
        gateway=type(gateway).__name__,
        repository=type(repository).__name__,
    )
    return BillingEngine(
        repository=repository,
        catalog=catalog,
        invoices=invoices,
        subscriptions=subscriptions,
        scheduler=scheduler,
        config=config,
        clock=clock,
    )
