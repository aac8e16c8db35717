from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Tuple


@dataclass(frozen=True)
class PricingConfig:
    # Order amounts (sanity ceiling)
    AMOUNT_MIN: Decimal = Decimal("0")
    AMOUNT_MAX: Decimal = Decimal("1000000")

    # Discounts
    DISCOUNT_VALUE_MIN: Decimal = Decimal("0")
    DISCOUNT_VALUE_MAX: Decimal = Decimal("1000000")
    USAGE_LIMIT_MIN: int = 1
    USAGE_LIMIT_MAX: int = 1000000

    # Tax rates
    TAX_RATE_MIN: Decimal = Decimal("0")
    TAX_RATE_MAX: Decimal = Decimal("100")
    TAX_PRIORITY_MIN: int = 0
    TAX_PRIORITY_MAX: int = 100

    # Order items
    QUANTITY_MIN: int = 1
    QUANTITY_MAX: int = 1000
    PRICE_MIN: Decimal = Decimal("0")
    PRICE_MAX: Decimal = Decimal("1000000")

    # Checkout
    DEFAULT_SHIPPING_AMOUNT: Decimal = Decimal("15.00")
    DEFAULT_CURRENCY: str = "USD"
    CURRENCIES: Tuple[str, ...] = ("USD", "EUR", "GBP", "JPY", "KRW", "RMB", "THB", "VND")
    # Refuse checkout when the shipping location resolves to no tax rate.
    REQUIRE_TAX_RATE: bool = False


config = PricingConfig()
