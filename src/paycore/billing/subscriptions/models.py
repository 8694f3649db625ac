"""
Subscription request models.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SubscriptionUpdateRequest(BaseModel):
    """Partial update; only fields that are set are applied."""

    model_config = ConfigDict(str_strip_whitespace=True)

    plan_id: str | None = Field(None, description="Switch to another plan (no proration)")
    quantity: int | None = Field(None, ge=1)
    payment_method_id: str | None = None
    cancel_at_period_end: bool | None = None
    metadata: dict[str, Any] | None = Field(None, description="Merged into existing metadata")
