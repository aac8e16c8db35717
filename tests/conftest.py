"""Pytest fixtures: a seeded in-memory store and a fixed clock."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from order_pricing.models import AppliesTo, DiscountType
from order_pricing.store import Store

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
PAST = NOW - timedelta(days=30)
FUTURE = NOW + timedelta(days=30)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def store() -> Store:
    store = Store()

    store.add_discount(
        "SAVE10", DiscountType.PERCENTAGE, Decimal("10"), PAST, FUTURE,
        id="d-save10", max_discount_amount=Decimal("5"),
    )
    store.add_discount("FLAT20", DiscountType.FIXED, Decimal("20"), PAST, FUTURE, id="d-flat20")
    store.add_discount(
        "MIN50", DiscountType.FIXED, Decimal("10"), PAST, FUTURE, id="d-min50", min_order_amount=Decimal("50")
    )
    store.add_discount("ONETIME", DiscountType.FIXED, Decimal("15"), PAST, FUTURE, id="d-onetime", usage_limit=1)
    store.add_discount(
        "USEDUP", DiscountType.FIXED, Decimal("15"), PAST, FUTURE, id="d-usedup", usage_limit=1, usage_count=1
    )
    store.add_discount("PAUSED", DiscountType.FIXED, Decimal("5"), PAST, FUTURE, id="d-paused", is_active=False)
    store.add_discount("SOON", DiscountType.FIXED, Decimal("5"), FUTURE, FUTURE + timedelta(days=1), id="d-soon")
    store.add_discount("OLD", DiscountType.FIXED, Decimal("5"), PAST - timedelta(days=10), PAST, id="d-old")
    store.add_discount(
        "TEA15", DiscountType.PERCENTAGE, Decimal("15"), PAST, FUTURE, id="d-tea15",
        applies_to=AppliesTo(all_products=False, product_ids=frozenset({"WHISK-01"}), category_ids=frozenset({"tea"})),
    )

    store.add_tax_rate("US federal", Decimal("7"), id="t-us", country="US", priority=10)
    store.add_tax_rate(
        "CA state", Decimal("2"), id="t-ca", country="US", state="CA", applies_to_shipping=True, priority=5
    )
    store.add_tax_rate("Retired", Decimal("3"), id="t-old", country="US", is_active=False, priority=50)
    store.add_tax_rate("VN VAT", Decimal("10"), id="t-vn", country="VN", priority=10)

    return store


@pytest.fixture
def past() -> datetime:
    return PAST


@pytest.fixture
def future() -> datetime:
    return FUTURE
