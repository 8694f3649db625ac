"""
Typed configuration handed to the billing services.

Built from process settings with ``BillingConfig.from_settings`` or constructed
directly in tests.
"""

from pydantic import BaseModel, Field, field_validator

from paycore.settings import Settings, get_settings


class CurrencyConfig(BaseModel):
    default_currency: str = Field("USD", description="Default currency code")
    locale: str = Field("en_US", description="Locale used to format amounts")


class DunningConfig(BaseModel):
    """Retry schedule for failed renewal charges."""

    max_attempts: int = Field(3, ge=1, description="Failed attempts before a subscription is unpaid")
    retry_delays_days: list[int] = Field(
        default=[1, 3, 7],
        min_length=1,
        description="Days to wait after the 1st, 2nd, ... failed attempt",
    )

    @field_validator("retry_delays_days")
    @classmethod
    def _positive_delays(cls, v: list[int]) -> list[int]:
        if any(delay <= 0 for delay in v):
            raise ValueError("Retry delays must be positive")
        return v


class SchedulerConfig(BaseModel):
    tick_interval_seconds: float = Field(300.0, gt=0, description="Seconds between ticks")
    item_pause_seconds: float = Field(
        0.1, ge=0, description="Pause between subscriptions within one tick"
    )
    claim_lease_seconds: int = Field(
        900, gt=0, description="How long a claimed billing slot stays reserved"
    )


class GatewayConfig(BaseModel):
    """Which gateway to charge through and how long to wait on it."""

    provider: str = Field("sandbox", description="Payment gateway provider")
    charge_timeout_seconds: float = Field(30.0, gt=0, description="Charge call timeout")


class WebhookConfig(BaseModel):
    emit_timeout_seconds: float = Field(
        5.0, gt=0, description="Upper bound for a single webhook emit call"
    )


class BillingConfig(BaseModel):
    currency: CurrencyConfig = Field(default_factory=CurrencyConfig)
    dunning: DunningConfig = Field(default_factory=DunningConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "BillingConfig":
        """Map the flat ``Settings.billing`` group onto the nested sections."""
        billing = (settings or get_settings()).billing

        return cls(
            currency=CurrencyConfig(
                default_currency=billing.default_currency,
                locale=billing.default_locale,
            ),
            dunning=DunningConfig(
                max_attempts=billing.max_payment_attempts,
                retry_delays_days=list(billing.retry_delays_days),
            ),
            scheduler=SchedulerConfig(
                tick_interval_seconds=billing.tick_interval_seconds,
                item_pause_seconds=billing.item_pause_seconds,
                claim_lease_seconds=billing.claim_lease_seconds,
            ),
            gateway=GatewayConfig(
                provider=billing.gateway_provider,
                charge_timeout_seconds=billing.charge_timeout_seconds,
            ),
            webhook=WebhookConfig(
                emit_timeout_seconds=billing.webhook_emit_timeout_seconds,
            ),
        )
