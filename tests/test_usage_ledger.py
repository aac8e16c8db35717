"""Tests for the discount usage ledger, its usage limit and reporting."""
import logging
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from order_pricing.checkout import CheckoutOrchestrator
from order_pricing.errors import CheckoutError, PricingInvariantError, StoreError, UsageLimitExceeded
from order_pricing.models import CartLine, CheckoutRequest, DiscountApplicationContext, DiscountType, UsageStatus
from order_pricing.services import DiscountsService


def test_record_usage_appends_and_counts(store, now):
    service = DiscountsService(store)
    usage = service.record_discount_usage("d-flat20", "user-1", "o-1", Decimal("20"), "$80.00", now=now)

    assert usage.usage_status is UsageStatus.COMPLETED
    assert usage.used_at == now
    assert usage.order_total == Decimal("80.00")
    assert store.usages == [usage]
    assert store.discounts["d-flat20"].usage_count == 1


def test_usage_limit_is_enforced_at_write(store, now):
    service = DiscountsService(store)
    service.record_discount_usage("d-onetime", "user-1", "o-1", Decimal("15"), Decimal("50"), now=now)

    with pytest.raises(UsageLimitExceeded):
        service.record_discount_usage("d-onetime", "user-2", "o-2", Decimal("15"), Decimal("50"), now=now)

    assert store.discounts["d-onetime"].usage_count == 1
    assert len(store.usages) == 1


def test_usage_recorded_once_per_order(store, now):
    service = DiscountsService(store)
    service.record_discount_usage("d-flat20", "user-1", "o-1", Decimal("20"), Decimal("80"), now=now)

    with pytest.raises(PricingInvariantError):
        service.record_discount_usage("d-flat20", "user-1", "o-1", Decimal("20"), Decimal("80"), now=now)
    assert store.discounts["d-flat20"].usage_count == 1


def test_failed_ledger_write_releases_counter(store, now):
    store.fail_on.add("append_discount_usage")
    service = DiscountsService(store)

    with pytest.raises(StoreError):
        service.record_discount_usage("d-onetime", "user-1", "o-1", Decimal("15"), Decimal("50"), now=now)

    assert store.discounts["d-onetime"].usage_count == 0
    assert store.usages == []


def test_concurrent_redemptions_respect_limit(store, now):
    logging.info("\n=== TEST: concurrent redemptions of a single-use code ===")
    service = DiscountsService(store)
    context = DiscountApplicationContext(user_id="user-1", subtotal=Decimal("60"), product_ids=["MATCHA-01"])

    def redeem(n: int) -> bool:
        result = service.apply_discount_to_order("ONETIME", context, now)
        if not result.is_valid:
            return False
        try:
            service.record_discount_usage("d-onetime", f"user-{n}", f"o-{n}", result.discount_amount, result.final_amount, now=now)
        except UsageLimitExceeded:
            return False
        return True

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(redeem, range(16)))

    assert outcomes.count(True) == 1
    assert store.discounts["d-onetime"].usage_count == 1
    completed = [u for u in store.usages if u.usage_status is UsageStatus.COMPLETED]
    assert len(completed) == 1


def test_concurrent_checkouts_place_one_order(store, now):
    checkout = CheckoutOrchestrator(store)

    def place(n: int) -> bool:
        request = CheckoutRequest(
            order_id=f"o-{n}",
            user_id=f"user-{n}",
            lines=[CartLine(product_id="MATCHA-01", quantity=1, unit_price=Decimal("32.00"))],
            country="US",
            discount_code="ONETIME",
        )
        try:
            checkout.place_order(request, now=now)
        except CheckoutError:
            return False
        return True

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(place, range(12)))

    assert outcomes.count(True) == 1
    assert len(store.orders) == 1
    assert len(store.usages) == 1
    assert store.usages[0].order_id in store.orders
    assert store.discounts["d-onetime"].usage_count == 1


def test_usage_queries(store, now):
    service = DiscountsService(store)
    service.record_discount_usage("d-flat20", "user-1", "o-1", Decimal("20"), Decimal("80"), now=now)
    service.record_discount_usage("d-flat20", "user-2", "o-2", Decimal("20"), Decimal("60"), now=now)
    service.record_discount_usage("d-save10", "user-1", "o-3", Decimal("5"), Decimal("95"), now=now)

    assert len(service.get_discount_usage(discount_id="d-flat20")) == 2
    assert [u.order_id for u in service.get_discount_usage(user_id="user-1")] == ["o-1", "o-3"]
    assert service.get_discount_usage(order_id="o-2")[0].user_id == "user-2"


def test_reporting(store, now):
    service = DiscountsService(store)
    service.record_discount_usage("d-flat20", "user-1", "o-1", Decimal("20"), Decimal("80"), now=now)
    service.record_discount_usage("d-flat20", "user-2", "o-2", Decimal("20"), Decimal("60"), now=now)
    service.record_discount_usage("d-save10", "user-1", "o-3", Decimal("5"), Decimal("95"), now=now)

    stats = service.get_discount_statistics(now)
    assert stats.total_discounts == 9
    assert stats.expired_discounts == 1
    # running: SAVE10, FLAT20, MIN50, ONETIME, USEDUP, TEA15
    assert stats.active_discounts == 6
    assert stats.total_usage == 3
    assert stats.total_discount_amount == Decimal("45")
    assert stats.most_used_discount.code == "FLAT20"

    top = service.get_top_discounts_by_usage(limit=1)
    assert [(d.code, count) for d, count in top] == [("FLAT20", 2)]
    assert service.get_discount_revenue_impact("d-flat20") == (Decimal("40"), 2)
    assert service.get_discount_revenue_impact("d-min50") == (Decimal("0"), 0)


def test_discount_queries_and_cleanup(store, now):
    service = DiscountsService(store)

    assert {d.code for d in service.get_expired_discounts(now)} == {"OLD"}
    assert {d.code for d in service.get_discounts_by_type(DiscountType.PERCENTAGE)} == {"SAVE10", "TEA15"}
    assert "SOON" not in {d.code for d in service.get_active_discounts(now)}

    assert service.cleanup_expired_discounts(now) == 1
    assert store.discounts["d-old"].is_active is False
    assert service.cleanup_expired_discounts(now) == 0
