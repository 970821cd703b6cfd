from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def quantize(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _finite(value: Decimal) -> Decimal:
    if not value.is_finite():
        raise ValueError("Cannot convert value to Decimal")
    try:
        return quantize(value)
    except InvalidOperation:
        # Too many digits for the context precision.
        raise ValueError("Cannot convert value to Decimal") from None


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValueError("Cannot convert value to Decimal")
    if isinstance(value, Decimal):
        return _finite(value)
    if isinstance(value, (int, float)):
        return _finite(Decimal(str(value)))
    if isinstance(value, str):
        try:
            parsed = Decimal(value.strip())
        except InvalidOperation:
            raise ValueError("Cannot convert value to Decimal") from None
        return _finite(parsed)
    raise ValueError("Cannot convert value to Decimal")


def amounts_close(a: Decimal, b: Decimal, tolerance: Decimal = CENT) -> bool:
    return abs(a - b) <= tolerance


def as_float(value: Decimal) -> float:
    return float(quantize(value))
