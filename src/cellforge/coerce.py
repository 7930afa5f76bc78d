"""Lenient value coercion shared by the formula and metric evaluators."""

import math
from decimal import Decimal
from typing import Any

Scalar = str | int | float | bool | None


def to_number(value: Any) -> float | None:
    """Coerce a cell or measure value to a float, or None if it isn't numeric.

    strings are stripped and thousands separators removed, so "1,234.5" works.
    bools are not numbers here - a TRUE cell shouldn't sum to 1.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip().replace(",", "")
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None

    if math.isnan(number) or math.isinf(number):
        return None
    return number


def normalize_number(value: float) -> int | float:
    """Return an int for whole floats so results render as 60, not 60.0."""
    if isinstance(value, float) and value.is_integer() and abs(value) < 2**53:
        return int(value)
    return value
