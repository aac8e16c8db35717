from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

CENT = Decimal("0.01")

_NON_NUMERIC = re.compile(r"[^0-9.+-]")


def coerce(value: Any) -> Decimal | None:
    """
    Turn loosely typed input into a Decimal, or None when there is no number.

    None, "" and anything that does not parse (NaN, infinities, "abc") are absent.
    Strings are stripped of every character other than digits, ".", "+" and "-"
    first, so "$1,299.50" reads as 1299.50.
    """
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        number = value
    elif isinstance(value, str):
        cleaned = _NON_NUMERIC.sub("", value)
        if not cleaned:
            return None
        try:
            number = Decimal(cleaned)
        except InvalidOperation:
            return None
    elif isinstance(value, (int, float)):
        number = Decimal(str(value)) if isinstance(value, float) else Decimal(int(value))
    else:
        return None
    if not number.is_finite():
        return None
    return number


def coerce_or(value: Any, fallback: Decimal | int | str = 0) -> Decimal:
    number = coerce(value)
    if number is None:
        return Decimal(fallback)
    return number


def to_money(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)
