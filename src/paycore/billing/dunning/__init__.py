"""Failed-payment retry policy."""

from paycore.billing.dunning.policy import DunningPolicy

__all__ = ["DunningPolicy"]
