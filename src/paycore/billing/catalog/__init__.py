"""Billing plan catalog."""

from paycore.billing.catalog.models import PlanCreateRequest
from paycore.billing.catalog.service import PlanCatalog

__all__ = ["PlanCatalog", "PlanCreateRequest"]
