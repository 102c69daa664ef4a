"""
Money arithmetic.

Amounts are integer minor units of the rental currency; ratios are Decimals
persisted as strings. Every derived amount is rounded exactly once, half-up
to the minor unit.
"""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union

Number = Union[int, str, Decimal, float]

ONE = Decimal("1")


def to_decimal(value: Number) -> Decimal:
    """Exact Decimal for ints/strings; floats go through repr to avoid binary noise"""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Not a number: {value!r}") from e


def round_half_up(value: Number) -> int:
    """Round to the minor unit, halves away from zero"""
    d = to_decimal(value)
    if not d.is_finite():
        raise ValueError(f"Non-finite amount: {value!r}")
    return int(d.quantize(ONE, rounding=ROUND_HALF_UP))


def apply_ratio(amount: int, ratio: Number) -> int:
    """amount × ratio, rounded once"""
    return round_half_up(Decimal(amount) * to_decimal(ratio))


def parse_ratio(value: Number) -> Decimal:
    """A ratio in [0, 1]"""
    ratio = to_decimal(value)
    if not ratio.is_finite() or ratio < 0 or ratio > 1:
        raise ValueError(f"Ratio must be between 0 and 1, got {value!r}")
    return ratio


def ratio_str(value: Number) -> str:
    """Canonical string form used for persistence"""
    return format(to_decimal(value).normalize(), "f")
