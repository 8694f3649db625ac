"""
Plan catalog request models.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from paycore.billing.core.enums import BillingInterval
from paycore.billing.money_utils import validate_currency


class PlanCreateRequest(BaseModel):
    """Request to create a billing plan."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255, description="Plan name")
    description: str | None = Field(None, max_length=1000)
    amount: int = Field(ge=0, description="Price per unit in minor currency units")
    currency: str | None = Field(
        None, min_length=3, max_length=3, description="Defaults to the configured currency"
    )
    interval: BillingInterval
    interval_count: int = Field(1, ge=1)
    trial_period_days: int | None = Field(None, ge=0)
    setup_fee: int | None = Field(None, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def _validate_currency(cls, v: str | None) -> str | None:
        return validate_currency(v) if v else v
