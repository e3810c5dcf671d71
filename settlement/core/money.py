# settlement/core/money.py

from decimal import Decimal, ROUND_HALF_UP

from settlement.core.errors import InvalidAmount

ONE_CENT = Decimal("1")
HUNDRED = Decimal("100")


def round_half_up(value: Decimal) -> int:
    """Rounds to a whole number of cents, halves away from zero."""
    return int(Decimal(value).quantize(ONE_CENT, rounding=ROUND_HALF_UP))


def apply_percent_off(amount_cents: int, percent: int | Decimal) -> int:
    """amount × (1 − percent/100), rounded half-up once at the cent boundary."""
    factor = (HUNDRED - Decimal(percent)) / HUNDRED
    return round_half_up(Decimal(amount_cents) * factor)


def percent_of(amount_cents: int, percent: int | Decimal) -> int:
    return round_half_up(Decimal(amount_cents) * Decimal(percent) / HUNDRED)


def convert(amount_cents: int, rate: Decimal) -> int:
    """Converts base-currency cents to target-currency cents."""
    return round_half_up(Decimal(amount_cents) * Decimal(rate))


def require_positive_cents(amount_cents) -> int:
    # bool is an int subclass; True must not pass as one cent
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise InvalidAmount("Amount must be a whole number of cents.")
    if amount_cents <= 0:
        raise InvalidAmount("Amount must be greater than zero.")
    return amount_cents
