from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from config.constants import AMOUNT_TOLERANCE, CURRENCY_SYMBOLS, MINOR_UNITS_PER_MAJOR
from config.env import CURRENCY

_CENT = Decimal("0.01")


def to_decimal(amount) -> Decimal:
    """
    Parse an amount coming from a request or a product price.
    Floats go through str() so 0.1 stays 0.1 instead of its binary expansion.
    """
    if isinstance(amount, Decimal):
        value = amount
    else:
        try:
            value = Decimal(str(amount).strip())
        except (InvalidOperation, ValueError):
            raise ValueError(f"Invalid amount: {amount!r}")

    # NaN and Infinity parse but poison every comparison after
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {amount!r}")
    return value


def to_minor_units(amount) -> int:
    value = to_decimal(amount).quantize(_CENT, rounding=ROUND_HALF_UP)
    return int(value * MINOR_UNITS_PER_MAJOR)


def from_minor_units(minor: int) -> Decimal:
    return (Decimal(minor) / MINOR_UNITS_PER_MAJOR).quantize(_CENT)


def amounts_match(submitted, expected_minor: int, tolerance=AMOUNT_TOLERANCE) -> bool:
    """
    Compare a submitted major-unit amount with an order total held in minor units.
    """
    delta = abs(to_decimal(submitted) - from_minor_units(expected_minor))
    return delta <= to_decimal(tolerance)


def format_amount(minor: int, currency: str = CURRENCY) -> str:
    symbol = CURRENCY_SYMBOLS.get(currency, f"{currency} ")
    return f"{symbol}{from_minor_units(minor):,.2f}"
