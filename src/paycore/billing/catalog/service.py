"""
Plan catalog.

Read-mostly registry of immutable plans. Plans are never deleted; retiring a
plan flips ``active`` by storing a new frozen copy.
"""

import structlog

from paycore.billing.catalog.models import PlanCreateRequest
from paycore.billing.config import BillingConfig
from paycore.billing.core.clock import Clock, SystemClock
from paycore.billing.core.models import Plan
from paycore.billing.events import (
    WebhookNotifier,
    emit_plan_created,
    emit_plan_updated,
)
from paycore.billing.exceptions import PlanNotFoundError
from paycore.billing.money_utils import format_minor_units
from paycore.billing.storage.repository import BillingRepository

logger = structlog.get_logger(__name__)


class PlanCatalog:
    """Creates, looks up and retires billing plans."""

    def __init__(
        self,
        repository: BillingRepository,
        notifier: WebhookNotifier,
        config: BillingConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.repository = repository
        self.notifier = notifier
        self.config = config or BillingConfig()
        self.clock = clock or SystemClock()

    async def create_plan(self, request: PlanCreateRequest) -> Plan:
        now = self.clock.now()
        plan = Plan(
            name=request.name,
            description=request.description,
            amount=request.amount,
            currency=request.currency or self.config.currency.default_currency,
            interval=request.interval,
            interval_count=request.interval_count,
            trial_period_days=request.trial_period_days,
            setup_fee=request.setup_fee,
            metadata=request.metadata,
            created_at=now,
            updated_at=now,
        )
        await self.repository.create_plan(plan)

        logger.info(
            "Plan created",
            plan_id=plan.plan_id,
            interval=plan.interval.value,
            interval_count=plan.interval_count,
            price=format_minor_units(plan.amount, plan.currency, self.config.currency.locale),
        )
        await emit_plan_created(
            self.notifier, plan, timeout=self.config.webhook.emit_timeout_seconds
        )
        return plan

    async def get_plan(self, plan_id: str) -> Plan:
        plan = await self.repository.get_plan(plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found", plan_id=plan_id)
        return plan

    async def get_active_plan(self, plan_id: str) -> Plan:
        """Like ``get_plan`` but retired plans are treated as missing."""
        plan = await self.get_plan(plan_id)
        if not plan.active:
            raise PlanNotFoundError(f"Plan {plan_id} is not active", plan_id=plan_id)
        return plan

    async def list_plans(self, active_only: bool = False) -> list[Plan]:
        plans = await self.repository.list_plans()
        if active_only:
            return [plan for plan in plans if plan.active]
        return plans

    async def deactivate_plan(self, plan_id: str) -> Plan:
        return await self._set_active(plan_id, False)

    async def activate_plan(self, plan_id: str) -> Plan:
        return await self._set_active(plan_id, True)

    async def _set_active(self, plan_id: str, active: bool) -> Plan:
        plan = await self.get_plan(plan_id)
        if plan.active == active:
            return plan

        updated = plan.model_copy(update={"active": active, "updated_at": self.clock.now()})
        await self.repository.update_plan(updated)

        logger.info("Plan active flag changed", plan_id=plan_id, active=active)
        await emit_plan_updated(
            self.notifier, updated, timeout=self.config.webhook.emit_timeout_seconds
        )
        return updated
