from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Iterable

ZERO = Decimal("0.00")
CENT = Decimal("0.01")


def to_decimal(value: Any) -> Decimal:
    """Coerce a numeric or string amount to Decimal; None counts as zero."""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Invalid monetary amount: {value!r}")


def quantize(value: Any) -> Decimal:
    """Round to currency precision (2 decimal places, half-up)."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def line_total(quantity: Any, unit_price: Any) -> Decimal:
    return quantize(to_decimal(quantity) * to_decimal(unit_price))


def sum_amounts(amounts: Iterable[Any]) -> Decimal:
    total = Decimal("0")
    for amount in amounts:
        total += to_decimal(amount)
    return quantize(total)


def format_money(value: Any) -> str:
    return format(quantize(value), "f")
