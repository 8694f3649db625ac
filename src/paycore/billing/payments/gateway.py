"""
Payment gateway collaborator.

The engine only needs one gateway operation, ``charge``. Outcomes are
returned as values; gateways may also raise ``PaymentDeclinedError`` or
``GatewayError`` and the scheduler treats those the same way.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Protocol
from uuid import uuid4

import structlog

from paycore.billing.core.models import Customer, Invoice, Subscription
from paycore.billing.exceptions import GatewayError, PaymentDeclinedError

logger = structlog.get_logger(__name__)

DECLINE_TOKEN_PREFIX = "pm_decline"
ERROR_TOKEN_PREFIX = "pm_error"


@dataclass(frozen=True)
class PaymentMethodReference:
    """Opaque payment method token resolved for one charge."""

    token: str
    customer_id: str
    source: str = "subscription"


@dataclass(frozen=True)
class ChargeSucceeded:
    transaction_id: str


@dataclass(frozen=True)
class ChargeDeclined:
    reason: str


@dataclass(frozen=True)
class ChargeErrored:
    message: str
    transient: bool = True


ChargeOutcome = ChargeSucceeded | ChargeDeclined | ChargeErrored


class PaymentGateway(Protocol):
    """Charges a payment method. Implementations must honour the idempotency key."""

    async def charge(
        self,
        amount: int,
        currency: str,
        payment_method: PaymentMethodReference,
        idempotency_key: str,
    ) -> ChargeOutcome: ...  # pragma: no cover - protocol definition


class PaymentMethodResolver:
    """Picks the payment method for a subscription charge."""

    def resolve(
        self, subscription: Subscription, customer: Customer | None
    ) -> PaymentMethodReference | None:
        if subscription.payment_method_id:
            return PaymentMethodReference(
                token=subscription.payment_method_id,
                customer_id=subscription.customer_id,
                source="subscription",
            )
        if customer is not None and customer.default_payment_method_id:
            return PaymentMethodReference(
                token=customer.default_payment_method_id,
                customer_id=customer.customer_id,
                source="customer_default",
            )
        return None


def idempotency_key_for(invoice: Invoice) -> str:
    """
    Key for the next charge attempt on ``invoice``.

    Invoices are unique per (subscription, period) and reused across retries,
    so replaying an attempt after a crash yields the same key, while each
    dunning retry gets a fresh one.

    The key is derived from (subscription, period start) through the invoice,
    plus the count of attempts already recorded on it. A worker that dies
    between the gateway call and ``record_success``/``record_failure`` leaves
    that count unchanged, so the retry after the lease expires sends the same
    key and the gateway returns the first outcome instead of charging twice.
    Only a recorded decline moves the key on to the next attempt.
    """
    return f"{invoice.invoice_id}:attempt-{invoice.attempt_count + 1}"


@dataclass
class SandboxCharge:
    amount: int
    currency: str
    token: str
    idempotency_key: str
    outcome: ChargeOutcome


@dataclass
class SandboxPaymentGateway:
    """
    In-process gateway for development and tests.

    Approves every charge unless the token starts with ``pm_decline``
    (declined) or ``pm_error`` (transient processor error). Repeated
    idempotency keys return the recorded outcome without charging again.
    """

    latency_seconds: float = 0.0
    charges: list[SandboxCharge] = field(default_factory=list)
    _by_key: dict[str, ChargeOutcome] = field(default_factory=dict, repr=False)

    async def charge(
        self,
        amount: int,
        currency: str,
        payment_method: PaymentMethodReference,
        idempotency_key: str,
    ) -> ChargeOutcome:
        if idempotency_key in self._by_key:
            logger.info("Sandbox charge replayed", idempotency_key=idempotency_key)
            return self._by_key[idempotency_key]

        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)

        outcome: ChargeOutcome
        if payment_method.token.startswith(DECLINE_TOKEN_PREFIX):
            outcome = ChargeDeclined(reason="card_declined")
        elif payment_method.token.startswith(ERROR_TOKEN_PREFIX):
            outcome = ChargeErrored(message="processor_unavailable", transient=True)
        else:
            outcome = ChargeSucceeded(transaction_id=f"txn_{uuid4().hex[:16]}")

        self._by_key[idempotency_key] = outcome
        self.charges.append(
            SandboxCharge(
                amount=amount,
                currency=currency,
                token=payment_method.token,
                idempotency_key=idempotency_key,
                outcome=outcome,
            )
        )
        return outcome

    @property
    def successful_charges(self) -> list[SandboxCharge]:
        return [c for c in self.charges if isinstance(c.outcome, ChargeSucceeded)]


async def attempt_charge(
    gateway: PaymentGateway,
    amount: int,
    currency: str,
    payment_method: PaymentMethodReference,
    idempotency_key: str,
    timeout: float,
) -> ChargeOutcome:
    """
    Call ``gateway.charge`` with a timeout and fold raised payment errors into
    outcome values. A timeout becomes a transient ``ChargeErrored``.
    """
    try:
        return await asyncio.wait_for(
            gateway.charge(amount, currency, payment_method, idempotency_key),
            timeout=timeout,
        )
    except TimeoutError:
        logger.warning(
            "Gateway charge timed out", idempotency_key=idempotency_key, timeout=timeout
        )
        return ChargeErrored(message="gateway_timeout", transient=True)
    except PaymentDeclinedError as e:
        return ChargeDeclined(reason=e.reason)
    except GatewayError as e:
        return ChargeErrored(message=e.message, transient=e.transient)


def failure_details(outcome: ChargeDeclined | ChargeErrored) -> tuple[str, bool]:
    """``(reason, transient)`` for a failed charge outcome."""
    if isinstance(outcome, ChargeDeclined):
        return outcome.reason, False
    return outcome.message, outcome.transient
