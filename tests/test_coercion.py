from decimal import Decimal

import pytest

from order_pricing.coercion import coerce, coerce_or, to_money


@pytest.mark.parametrize(
    "value, expected",
    [
        (10, Decimal("10")),
        (2.5, Decimal("2.5")),
        (0.1, Decimal("0.1")),
        ("42", Decimal("42")),
        ("$1,299.50", Decimal("1299.50")),
        (" -3.25 USD", Decimal("-3.25")),
        (Decimal("7.10"), Decimal("7.10")),
        (True, Decimal("1")),
    ],
)
def test_coerce_numbers(value, expected):
    assert coerce(value) == expected


@pytest.mark.parametrize("value", [None, "", "abc", "1.2.3", "--", float("nan"), float("inf"), [], {}])
def test_coerce_absent(value):
    assert coerce(value) is None


def test_coerce_or_fallback():
    assert coerce_or(None) == Decimal("0")
    assert coerce_or("n/a", "15.00") == Decimal("15.00")
    assert coerce_or("12", 0) == Decimal("12")


def test_to_money_rounds_half_up():
    assert to_money(Decimal("2.345")) == Decimal("2.35")
    assert to_money(Decimal("9.2")) == Decimal("9.20")
