"""
Dunning policy: what happens after the n-th failed recurring charge.
"""

from collections.abc import Sequence
from datetime import datetime, timedelta

from paycore.billing.config import DunningConfig
from paycore.billing.core.clock import Clock, SystemClock
from paycore.billing.core.enums import SubscriptionStatus

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAYS_DAYS: tuple[int, ...] = (1, 3, 7)


class DunningPolicy:
    """
    Maps a failed-attempt number to a retry date and a subscription verdict.

    Attempt numbers are 1-based. Attempts past the end of the delay list reuse
    the last delay.
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delays_days: Sequence[int] = DEFAULT_RETRY_DELAYS_DAYS,
        clock: Clock | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not retry_delays_days:
            raise ValueError("retry_delays_days must not be empty")
        self.max_attempts = max_attempts
        self.retry_delays_days = tuple(retry_delays_days)
        self.clock = clock or SystemClock()

    @classmethod
    def from_config(cls, config: DunningConfig, clock: Clock | None = None) -> "DunningPolicy":
        return cls(
            max_attempts=config.max_attempts,
            retry_delays_days=config.retry_delays_days,
            clock=clock,
        )

    def _check_attempt(self, attempt_number: int) -> None:
        if attempt_number < 1:
            raise ValueError(f"Attempt numbers start at 1, got {attempt_number}")

    def retry_delay(self, attempt_number: int) -> timedelta:
        self._check_attempt(attempt_number)
        index = min(attempt_number, len(self.retry_delays_days)) - 1
        return timedelta(days=self.retry_delays_days[index])

    def next_retry_date(self, attempt_number: int) -> datetime:
        return self.clock.now() + self.retry_delay(attempt_number)

    def should_retry(self, attempt_number: int) -> bool:
        self._check_attempt(attempt_number)
        return attempt_number < self.max_attempts

    def verdict(self, attempt_number: int) -> SubscriptionStatus:
        """``past_due`` while retries remain, ``unpaid`` once they are exhausted."""
        if self.should_retry(attempt_number):
            return SubscriptionStatus.PAST_DUE
        return SubscriptionStatus.UNPAID
