"""
Billing cycle date arithmetic.

Month and year steps use ``dateutil.relativedelta``, which clamps a day that
does not exist in the target month to that month's last day:

    2024-01-31 + 1 month  -> 2024-02-29
    2023-01-31 + 1 month  -> 2023-02-28
    2024-02-29 + 1 year   -> 2025-02-28

Each boundary is computed from the previous one, so an anchor on the 31st
settles on the 28th/29th after February. Timezone info is preserved.
"""

from datetime import datetime

from dateutil.relativedelta import relativedelta

from paycore.billing.core.enums import BillingInterval
from paycore.billing.exceptions import UnsupportedIntervalError

# interval -> (relativedelta keyword, units per interval)
_INTERVAL_UNITS: dict[BillingInterval, tuple[str, int]] = {
    BillingInterval.DAILY: ("days", 1),
    BillingInterval.WEEKLY: ("days", 7),
    BillingInterval.MONTHLY: ("months", 1),
    BillingInterval.QUARTERLY: ("months", 3),
    BillingInterval.YEARLY: ("years", 1),
}


def _coerce_interval(interval: BillingInterval | str) -> BillingInterval:
    if isinstance(interval, BillingInterval):
        return interval
    try:
        return BillingInterval(interval)
    except ValueError:
        raise UnsupportedIntervalError(
            f"Unsupported billing interval: {interval}", interval=str(interval)
        ) from None


def interval_delta(interval: BillingInterval | str, interval_count: int = 1) -> relativedelta:
    """Length of ``interval_count`` billing intervals."""
    if interval_count < 1:
        raise UnsupportedIntervalError(
            f"Interval count must be at least 1, got {interval_count}", interval=str(interval)
        )

    unit, multiplier = _INTERVAL_UNITS[_coerce_interval(interval)]
    return relativedelta(**{unit: multiplier * interval_count})


def next_billing_date(
    period_start: datetime, interval: BillingInterval | str, interval_count: int = 1
) -> datetime:
    """Return the period boundary ``interval_count`` intervals after ``period_start``."""
    return period_start + interval_delta(interval, interval_count)


class BillingCycleCalculator:
    """Stateless wrapper so services can take the calculator as a dependency."""

    def next_billing_date(
        self, period_start: datetime, interval: BillingInterval | str, interval_count: int = 1
    ) -> datetime:
        return next_billing_date(period_start, interval, interval_count)

    def period_for(
        self, period_start: datetime, interval: BillingInterval | str, interval_count: int = 1
    ) -> tuple[datetime, datetime]:
        """Return ``(start, end)`` of the billing period beginning at ``period_start``."""
        return period_start, next_billing_date(period_start, interval, interval_count)
