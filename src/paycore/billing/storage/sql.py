"""
SQLAlchemy billing repository.

Tables for plans, customers, subscriptions and invoices, plus the async
repository that maps rows to the pydantic domain models. Every method runs in
its own session and commits before returning.
"""

from datetime import datetime
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    select,
    text,
    update,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from paycore.billing.core.enums import (
    BILLABLE_SUBSCRIPTION_STATUSES,
    BillingInterval,
    InvoiceKind,
    InvoiceStatus,
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
from paycore.db import Base, UTCDateTime

logger = structlog.get_logger(__name__)

_LIVE_STATUS_CLAUSE = "status IN ('active', 'trialing')"


def _enum_column(enum_cls: type[Enum], name: str) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


# ============================================================================
# Tables
# ============================================================================


class PlanRow(Base):
    __tablename__ = "billing_plans"

    plan_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    interval: Mapped[BillingInterval] = mapped_column(
        _enum_column(BillingInterval, "billinginterval"), nullable=False
    )
    interval_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    trial_period_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    setup_fee: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class CustomerRow(Base):
    __tablename__ = "billing_customers"

    customer_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    default_payment_method_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class SubscriptionRow(Base):
    __tablename__ = "billing_subscriptions"
    __table_args__ = (
        # One live subscription per (customer, plan)
        Index(
            "uq_billing_subscriptions_live",
            "customer_id",
            "plan_id",
            unique=True,
            sqlite_where=text(_LIVE_STATUS_CLAUSE),
            postgresql_where=text(_LIVE_STATUS_CLAUSE),
        ),
        Index("ix_billing_subscriptions_due", "status", "next_payment_date"),
    )

    subscription_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    plan_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[SubscriptionStatus] = mapped_column(
        _enum_column(SubscriptionStatus, "subscriptionstatus"), nullable=False
    )
    current_period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    trial_start: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    trial_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    canceled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    next_payment_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_payment_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    failed_payment_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    payment_method_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class InvoiceRow(Base):
    __tablename__ = "billing_invoices"
    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "period_start", "kind", name="uq_billing_invoices_period"
        ),
    )

    invoice_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    subscription_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    kind: Mapped[InvoiceKind] = mapped_column(
        _enum_column(InvoiceKind, "invoicekind"), nullable=False
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[InvoiceStatus] = mapped_column(
        _enum_column(InvoiceStatus, "invoicestatus"), nullable=False, index=True
    )
    period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    due_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_payment_attempt: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_payment_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    transaction_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


# ============================================================================
# Mappers
# ============================================================================


def _to_columns(model: Plan | Customer | Subscription | Invoice) -> dict[str, Any]:
    data = model.model_dump()
    data["metadata_json"] = data.pop("metadata") or {}
    return data


def _from_row(row: Base) -> dict[str, Any]:
    data = {attr.key: getattr(row, attr.key) for attr in sa_inspect(row).mapper.column_attrs}
    data["metadata"] = data.pop("metadata_json") or {}
    return data


def _apply(row: Base, model: Plan | Customer | Subscription | Invoice) -> None:
    for key, value in _to_columns(model).items():
        setattr(row, key, value)


# ============================================================================
# Repository
# ============================================================================


class SqlAlchemyBillingRepository:
    """``BillingRepository`` backed by SQLAlchemy async sessions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------ plans

    async def create_plan(self, plan: Plan) -> Plan:
        async with self._session_factory() as session:
            session.add(PlanRow(**_to_columns(plan)))
            await session.commit()
        return plan

    async def get_plan(self, plan_id: str) -> Plan | None:
        async with self._session_factory() as session:
            row = await session.get(PlanRow, plan_id)
            return Plan.model_validate(_from_row(row)) if row else None

    async def update_plan(self, plan: Plan) -> Plan:
        async with self._session_factory() as session:
            row = await session.get(PlanRow, plan.plan_id)
            if row is None:
                raise PlanNotFoundError(f"Plan {plan.plan_id} not found", plan_id=plan.plan_id)
            _apply(row, plan)
            await session.commit()
        return plan

    async def list_plans(self) -> list[Plan]:
        async with self._session_factory() as session:
            result = await session.execute(select(PlanRow).order_by(PlanRow.created_at))
            return [Plan.model_validate(_from_row(row)) for row in result.scalars()]

    # -------------------------------------------------------------- customers

    async def create_customer(self, customer: Customer) -> Customer:
        async with self._session_factory() as session:
            session.add(CustomerRow(**_to_columns(customer)))
            await session.commit()
        return customer

    async def get_customer(self, customer_id: str) -> Customer | None:
        async with self._session_factory() as session:
            row = await session.get(CustomerRow, customer_id)
            return Customer.model_validate(_from_row(row)) if row else None

    # ---------------------------------------------------------- subscriptions

    async def create_subscription(self, subscription: Subscription) -> Subscription:
        async with self._session_factory() as session:
            session.add(SubscriptionRow(**_to_columns(subscription)))
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateSubscriptionError(
                    "Customer already has an active subscription for this plan",
                    customer_id=subscription.customer_id,
                    plan_id=subscription.plan_id,
                ) from e
        return subscription

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        async with self._session_factory() as session:
            row = await session.get(SubscriptionRow, subscription_id)
            return Subscription.model_validate(_from_row(row)) if row else None

    async def update_subscription(self, subscription: Subscription) -> Subscription:
        async with self._session_factory() as session:
            row = await session.get(SubscriptionRow, subscription.subscription_id)
            if row is None:
                raise SubscriptionNotFoundError(
                    f"Subscription {subscription.subscription_id} not found",
                    subscription_id=subscription.subscription_id,
                )
            _apply(row, subscription)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateSubscriptionError(
                    "Customer already has an active subscription for this plan",
                    customer_id=subscription.customer_id,
                    plan_id=subscription.plan_id,
                ) from e
        return subscription

    async def update_subscription_if_unchanged(
        self,
        subscription: Subscription,
        expected_status: SubscriptionStatus,
        expected_updated_at: datetime,
    ) -> bool:
        columns = {
            getattr(SubscriptionRow, key): value
            for key, value in _to_columns(subscription).items()
            if key != "subscription_id"
        }
        stmt = (
            update(SubscriptionRow)
            .where(
                SubscriptionRow.subscription_id == subscription.subscription_id,
                SubscriptionRow.status == expected_status,
                SubscriptionRow.updated_at == expected_updated_at,
            )
            .values(columns)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            try:
                result = await session.execute(stmt)
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateSubscriptionError(
                    "Customer already has an active subscription for this plan",
                    customer_id=subscription.customer_id,
                    plan_id=subscription.plan_id,
                ) from e
            if result.rowcount == 1:
                return True
            exists = await session.get(SubscriptionRow, subscription.subscription_id)
        if exists is None:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription.subscription_id} not found",
                subscription_id=subscription.subscription_id,
            )
        logger.debug(
            "Subscription changed since it was read",
            subscription_id=subscription.subscription_id,
        )
        return False

    async def get_customer_subscriptions(self, customer_id: str) -> list[Subscription]:
        stmt = (
            select(SubscriptionRow)
            .where(SubscriptionRow.customer_id == customer_id)
            .order_by(SubscriptionRow.created_at)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [Subscription.model_validate(_from_row(row)) for row in result.scalars()]

    async def get_due_subscriptions(self, now: datetime) -> list[Subscription]:
        stmt = (
            select(SubscriptionRow)
            .where(
                SubscriptionRow.status.in_(list(BILLABLE_SUBSCRIPTION_STATUSES)),
                SubscriptionRow.next_payment_date <= now,
            )
            .order_by(SubscriptionRow.next_payment_date)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [Subscription.model_validate(_from_row(row)) for row in result.scalars()]

    async def get_trials_ending(self, now: datetime) -> list[Subscription]:
        stmt = (
            select(SubscriptionRow)
            .where(
                SubscriptionRow.status == SubscriptionStatus.TRIALING,
                SubscriptionRow.trial_end.is_not(None),
                SubscriptionRow.trial_end <= now,
            )
            .order_by(SubscriptionRow.trial_end)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [Subscription.model_validate(_from_row(row)) for row in result.scalars()]

    async def claim_for_billing(
        self,
        subscription_id: str,
        expected_next_payment_date: datetime,
        lease_until: datetime,
    ) -> Subscription | None:
        stmt = (
            update(SubscriptionRow)
            .where(
                SubscriptionRow.subscription_id == subscription_id,
                SubscriptionRow.status.in_(list(BILLABLE_SUBSCRIPTION_STATUSES)),
                SubscriptionRow.next_payment_date == expected_next_payment_date,
            )
            .values(next_payment_date=lease_until)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            if result.rowcount != 1:
                logger.debug("Billing claim lost", subscription_id=subscription_id)
                return None
            row = await session.get(SubscriptionRow, subscription_id, populate_existing=True)
            return Subscription.model_validate(_from_row(row)) if row else None

    # --------------------------------------------------------------- invoices

    async def create_invoice(self, invoice: Invoice) -> Invoice:
        async with self._session_factory() as session:
            session.add(InvoiceRow(**_to_columns(invoice)))
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise InvoiceAlreadyExistsError(
                    "Invoice already exists for this billing period",
                    subscription_id=invoice.subscription_id,
                    period_start=invoice.period_start.isoformat(),
                ) from e
        return invoice

    async def get_invoice(self, invoice_id: str) -> Invoice | None:
        async with self._session_factory() as session:
            row = await session.get(InvoiceRow, invoice_id)
            return Invoice.model_validate(_from_row(row)) if row else None

    async def update_invoice(self, invoice: Invoice) -> Invoice:
        async with self._session_factory() as session:
            row = await session.get(InvoiceRow, invoice.invoice_id)
            if row is None:
                raise InvoiceNotFoundError(
                    f"Invoice {invoice.invoice_id} not found", invoice_id=invoice.invoice_id
                )
            _apply(row, invoice)
            await session.commit()
        return invoice

    async def get_invoice_for_period(
        self, subscription_id: str, period_start: datetime
    ) -> Invoice | None:
        stmt = select(InvoiceRow).where(
            InvoiceRow.subscription_id == subscription_id,
            InvoiceRow.kind == InvoiceKind.SUBSCRIPTION,
            InvoiceRow.period_start == period_start,
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
            return Invoice.model_validate(_from_row(row)) if row else None

    async def list_subscription_invoices(self, subscription_id: str) -> list[Invoice]:
        stmt = (
            select(InvoiceRow)
            .where(InvoiceRow.subscription_id == subscription_id)
            .order_by(InvoiceRow.period_start, InvoiceRow.created_at)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [Invoice.model_validate(_from_row(row)) for row in result.scalars()]
