"""Billing persistence: the repository protocol and its implementations."""

from paycore.billing.storage.memory import InMemoryBillingRepository
from paycore.billing.storage.repository import BillingRepository
from paycore.billing.storage.sql import SqlAlchemyBillingRepository

__all__ = [
    "BillingRepository",
    "InMemoryBillingRepository",
    "SqlAlchemyBillingRepository",
]
