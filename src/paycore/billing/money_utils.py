"""
Currency helpers for integer minor-unit amounts.

Every amount in the engine is an ``int`` of minor units (cents for USD,
whole yen for JPY). py-moneyed supplies the ISO 4217 registry and ``Money``
values, Babel supplies the decimal exponent of each currency and the
locale-aware rendering used in logs and invoice metadata.
"""

from decimal import Decimal

from babel import Locale
from babel.core import UnknownLocaleError
from babel.numbers import format_currency, get_currency_precision
from moneyed import Money, get_currency
from moneyed.classes import CurrencyDoesNotExist

DEFAULT_LOCALE = "en_US"


def validate_currency(currency_code: str) -> str:
    """Return the upper-cased ISO 4217 code, or raise ``ValueError``."""
    code = currency_code.strip().upper()
    try:
        return get_currency(code).code
    except CurrencyDoesNotExist:
        raise ValueError(f"Invalid currency code: {currency_code}") from None


def minor_unit_exponent(currency_code: str) -> int:
    """Number of minor-unit digits, e.g. 2 for USD and 0 for JPY."""
    return get_currency_precision(validate_currency(currency_code))


def to_money(minor_units: int, currency: str = "USD") -> Money:
    """``999, "USD"`` -> ``Money("9.99", "USD")``."""
    code = validate_currency(currency)
    scale = Decimal(10) ** minor_unit_exponent(code)
    return Money(amount=Decimal(minor_units) / scale, currency=code)


class AmountFormatter:
    """Renders minor-unit amounts for one locale, falling back to en_US."""

    def __init__(self, locale: str = DEFAULT_LOCALE) -> None:
        try:
            Locale.parse(locale)
        except (UnknownLocaleError, ValueError):
            locale = DEFAULT_LOCALE
        self.locale = locale

    def format(self, minor_units: int, currency: str = "USD") -> str:
        money = to_money(minor_units, currency)
        try:
            return format_currency(money.amount, money.currency.code, locale=self.locale)
        except (TypeError, ValueError):
            return f"{money.currency.code} {money.amount}"


def format_minor_units(minor_units: int, currency: str = "USD", locale: str | None = None) -> str:
    """``999, "USD"`` -> ``$9.99`` in the given (or default) locale."""
    return AmountFormatter(locale or DEFAULT_LOCALE).format(minor_units, currency)


__all__ = [
    "DEFAULT_LOCALE",
    "AmountFormatter",
    "format_minor_units",
    "minor_unit_exponent",
    "to_money",
    "validate_currency",
]
