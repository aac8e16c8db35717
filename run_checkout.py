from __future__ import annotations

import argparse
import dataclasses
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from order_pricing.checkout import CheckoutOrchestrator
from order_pricing.config import config
from order_pricing.errors import CheckoutError, PricingInvariantError
from order_pricing.models import AppliesTo, CartLine, CheckoutRequest, DiscountType
from order_pricing.store import Store

CATALOG = {
    "MATCHA-01": (Decimal("32.00"), "tea"),
    "MATCHA-02": (Decimal("54.00"), "tea"),
    "WHISK-01": (Decimal("18.50"), "tools"),
}


def seed(store: Store) -> None:
    now = datetime.now(timezone.utc)
    past, future = now - timedelta(days=30), now + timedelta(days=30)

    store.add_discount(
        "SAVE10", DiscountType.PERCENTAGE, Decimal("10"), past, future, max_discount_amount=Decimal("5")
    )
    store.add_discount("FLAT20", DiscountType.FIXED, Decimal("20"), past, future, min_order_amount=Decimal("50"))
    store.add_discount("ONETIME", DiscountType.FIXED, Decimal("15"), past, future, usage_limit=1)
    store.add_discount(
        "TEA15",
        DiscountType.PERCENTAGE,
        Decimal("15"),
        past,
        future,
        applies_to=AppliesTo(all_products=False, category_ids=frozenset({"tea"})),
    )
    store.add_discount("OLD", DiscountType.FIXED, Decimal("5"), past - timedelta(days=60), past)

    store.add_tax_rate("US federal", Decimal("7"), country="US", priority=10)
    store.add_tax_rate("CA state", Decimal("2"), country="US", state="CA", applies_to_shipping=True, priority=5)


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(message)s")

    p = argparse.ArgumentParser(description="Price and place one order, then print totals and the log.")
    p.add_argument("--user-id", type=str, default="user-1")
    p.add_argument("--item", action="append", default=None, help="SKU[:QTY], repeatable (e.g. MATCHA-01:2)")
    p.add_argument("--code", type=str, default=None, help="Discount code")
    p.add_argument("--country", type=str, default="US")
    p.add_argument("--state", type=str, default="CA")
    p.add_argument("--zip", type=str, default=None)
    p.add_argument("--shipping", type=str, default=None, help="Shipping amount (default from config)")
    p.add_argument("--max-amount", type=str, default=None, help="Sanity ceiling for order amounts")
    p.add_argument("--fail-at", type=str, default=None, help="Step name to fail artificially (e.g. RecordDiscountUsage)")
    args = p.parse_args()

    cfg = config
    if args.max_amount:
        cfg = dataclasses.replace(cfg, AMOUNT_MAX=Decimal(args.max_amount))

    store = Store(cfg)
    seed(store)

    lines = []
    for spec in args.item or ["MATCHA-01:2"]:
        sku, _, qty = spec.partition(":")
        if sku not in CATALOG:
            p.error(f"unknown SKU {sku!r}; choose from {', '.join(CATALOG)}")
        price, category = CATALOG[sku]
        lines.append(CartLine(product_id=sku, quantity=qty or 1, unit_price=price, category_id=category))

    req = CheckoutRequest(
        user_id=args.user_id,
        lines=lines,
        country=args.country,
        state=args.state,
        zip_code=args.zip,
        shipping_amount=args.shipping,
        discount_code=args.code,
    )

    checkout = CheckoutOrchestrator(store, cfg)
    print("\n=== QUOTE ===")
    try:
        priced = checkout.price(req)
    except PricingInvariantError as e:
        print("totals rejected:", e)
        return
    if priced.discount is not None:
        print("discount:", priced.discount.is_valid, priced.discount.reason or priced.discount.discount_amount)
    for line in priced.tax.breakdown:
        print(f"tax {line.tax_rate.name} ({line.tax_rate.rate}%): {line.amount}")
    print("totals:", priced.totals)

    print("\n=== RESULT ===")
    try:
        order = checkout.place_order(req, fail_at_step=args.fail_at)
    except CheckoutError as e:
        print("failed:", e)
    else:
        print("order:", order.order_code, order.totals.final_price)
        for item in order.items:
            print("  item:", item.product_id, item.quantity, item.total, "discount", item.discount_amount)
    print("usages:", store.usages)


if __name__ == "__main__":
    main()
