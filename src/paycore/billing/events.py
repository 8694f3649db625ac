"""
Billing event types and webhook emission helpers.

This module defines the billing events the engine produces and the
``WebhookNotifier`` collaborator they are handed to. Emission is
fire-and-forget: a slow or failing notifier is bounded by a timeout and
logged, it never fails the billing flow.
"""

import asyncio
from typing import Any, Protocol

import structlog

from paycore.billing.core.models import Invoice, Plan, Subscription

logger = structlog.get_logger(__name__)

DEFAULT_EMIT_TIMEOUT_SECONDS = 5.0


# ============================================================================
# Billing Event Types
# ============================================================================


class BillingEvents:
    """Billing event type constants."""

    # Plan events
    PLAN_CREATED = "plan.created"
    PLAN_UPDATED = "plan.updated"

    # Subscription events
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    SUBSCRIPTION_PAYMENT_SUCCEEDED = "subscription.payment_succeeded"
    SUBSCRIPTION_PAYMENT_FAILED = "subscription.payment_failed"

    # Invoice events
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


# ============================================================================
# Notifier collaborator
# ============================================================================


class WebhookNotifier(Protocol):
    """Hands billing events to webhook delivery (transport lives elsewhere)."""

    async def emit(
        self, event_type: str, payload: dict[str, Any]
    ) -> None: ...  # pragma: no cover - protocol definition


class InMemoryWebhookNotifier:
    """Keeps emitted events in a list. Used by tests and local runs."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    async def emit(self, event_type: str, payload: dict[str, Any]) -> None:
        self.events.append((event_type, payload))

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [payload for kind, payload in self.events if kind == event_type]

    @property
    def event_types(self) -> list[str]:
        return [kind for kind, _ in self.events]

    def clear(self) -> None:
        self.events.clear()


class LoggingWebhookNotifier:
    """Writes events to the structured log instead of delivering them."""

    def __init__(self, logger_name: str = "paycore.webhooks") -> None:
        self._logger = structlog.get_logger(logger_name)

    async def emit(self, event_type: str, payload: dict[str, Any]) -> None:
        self._logger.info("Webhook event", event_type=event_type, payload=payload)


# ============================================================================
# Event Emission Helpers
# ============================================================================


async def emit_event(
    notifier: WebhookNotifier,
    event_type: str,
    payload: dict[str, Any],
    timeout: float = DEFAULT_EMIT_TIMEOUT_SECONDS,
) -> bool:
    """
    Emit one event without ever raising.

    Args:
        notifier: Webhook notifier collaborator
        event_type: One of the ``BillingEvents`` constants
        payload: JSON-serialisable event body
        timeout: Seconds to wait for the notifier before giving up

    Returns:
        True if the notifier accepted the event, False if it failed or timed out
    """
    try:
        await asyncio.wait_for(notifier.emit(event_type, payload), timeout=timeout)
    except TimeoutError:
        logger.warning("Webhook emit timed out", event_type=event_type, timeout=timeout)
        return False
    except Exception as e:
        logger.error("Webhook emit failed", event_type=event_type, error=str(e))
        return False

    logger.debug("Webhook event emitted", event_type=event_type)
    return True


def _dump(model: Plan | Subscription | Invoice) -> dict[str, Any]:
    return model.model_dump(mode="json")


async def emit_plan_created(
    notifier: WebhookNotifier, plan: Plan, timeout: float = DEFAULT_EMIT_TIMEOUT_SECONDS
) -> None:
    await emit_event(notifier, BillingEvents.PLAN_CREATED, {"plan": _dump(plan)}, timeout)


async def emit_plan_updated(
    notifier: WebhookNotifier, plan: Plan, timeout: float = DEFAULT_EMIT_TIMEOUT_SECONDS
) -> None:
    await emit_event(notifier, BillingEvents.PLAN_UPDATED, {"plan": _dump(plan)}, timeout)


async def emit_subscription_created(
    notifier: WebhookNotifier,
    subscription: Subscription,
    timeout: float = DEFAULT_EMIT_TIMEOUT_SECONDS,
) -> None:
    await emit_event(
        notifier,
        BillingEvents.SUBSCRIPTION_CREATED,
        {"subscription": _dump(subscription)},
        timeout,
    )


async def emit_subscription_updated(
    notifier: WebhookNotifier,
    subscription: Subscription,
    timeout: float = DEFAULT_EMIT_TIMEOUT_SECONDS,
    **extra_data: Any,
) -> None:
    await emit_event(
        notifier,
        BillingEvents.SUBSCRIPTION_UPDATED,
        {"subscription": _dump(subscription), **extra_data},
        timeout,
    )


async def emit_subscription_canceled(
    notifier: WebhookNotifier,
    subscription: Subscription,
    timeout: float = DEFAULT_EMIT_TIMEOUT_SECONDS,
    reason: str | None = None,
) -> None:
    await emit_event(
        notifier,
        BillingEvents.SUBSCRIPTION_CANCELED,
        {"subscription": _dump(subscription), "reason": reason},
        timeout,
    )


async def emit_payment_succeeded(
    notifier: WebhookNotifier,
    subscription: Subscription | None,
    invoice: Invoice,
    transaction_id: str,
    timeout: float = DEFAULT_EMIT_TIMEOUT_SECONDS,
) -> None:
    """
    Emit the success pair: ``subscription.payment_succeeded`` (when the charge
    belongs to a recurring cycle) and ``invoice.payment_succeeded``.
    """
    payment = {
        "id": transaction_id,
        "amount": invoice.amount,
        "currency": invoice.currency,
        "status": "succeeded",
    }
    if subscription is not None:
        await emit_event(
            notifier,
            BillingEvents.SUBSCRIPTION_PAYMENT_SUCCEEDED,
            {"subscription": _dump(subscription), "invoice": _dump(invoice), "payment": payment},
            timeout,
        )
    await emit_event(
        notifier,
        BillingEvents.INVOICE_PAYMENT_SUCCEEDED,
        {"invoice": _dump(invoice), "payment": payment},
        timeout,
    )

    logger.info(
        "Payment succeeded events emitted",
        invoice_id=invoice.invoice_id,
        transaction_id=transaction_id,
    )


async def emit_payment_failed(
    notifier: WebhookNotifier,
    subscription: Subscription | None,
    invoice: Invoice,
    error_message: str,
    transient: bool = False,
    timeout: float = DEFAULT_EMIT_TIMEOUT_SECONDS,
) -> None:
    """Emit the failure pair: ``subscription.payment_failed`` and ``invoice.payment_failed``."""
    payment = {
        "amount": invoice.amount,
        "currency": invoice.currency,
        "status": "failed",
        "error": error_message,
        "transient": transient,
    }
    if subscription is not None:
        await emit_event(
            notifier,
            BillingEvents.SUBSCRIPTION_PAYMENT_FAILED,
            {"subscription": _dump(subscription), "invoice": _dump(invoice), "payment": payment},
            timeout,
        )
    await emit_event(
        notifier,
        BillingEvents.INVOICE_PAYMENT_FAILED,
        {"invoice": _dump(invoice), "payment": payment},
        timeout,
    )

    logger.warning(
        "Payment failed events emitted",
        invoice_id=invoice.invoice_id,
        error=error_message,
        transient=transient,
    )
