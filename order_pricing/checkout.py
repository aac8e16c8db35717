from __future__ import annotations

import secrets
import string
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_DOWN, Decimal
from typing import List, Optional

from order_pricing.coercion import CENT, coerce_or, to_money
from order_pricing.config import PricingConfig, config
from order_pricing.errors import CheckoutError, PricingInvariantError
from order_pricing.models import (
    CalculationResult,
    CartLine,
    CheckoutRequest,
    DiscountApplicationContext,
    Order,
    OrderItem,
    OrderTotals,
    TaxCalculationContext,
    TaxResult,
)
from order_pricing.services import DiscountsService, TaxService, utcnow
from order_pricing.store import Store, new_id

_BASE36 = string.digits + string.ascii_uppercase


def _base36(number: int) -> str:
    digits = []
    while True:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
        if not number:
            return "".join(reversed(digits))


def generate_order_code() -> str:
    stamp = _base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"ORD-{stamp}-{suffix}"


def assemble_totals(
    subtotal: Decimal,
    discount_result: Optional[CalculationResult],
    tax_result: Optional[TaxResult],
    shipping_amount: Decimal,
    cfg: PricingConfig = config,
) -> OrderTotals:
    """
    subtotal -> discount -> tax -> shipping -> final price, in cents.

    final_price is built from the rounded parts so the figures on the order add up.
    Any field below zero or above the sanity ceiling raises PricingInvariantError;
    nothing is clamped here.
    """
    discount_total = Decimal("0")
    if discount_result is not None and discount_result.is_valid:
        discount_total = discount_result.discount_amount
    tax_amount = tax_result.tax_amount if tax_result is not None else Decimal("0")

    subtotal = to_money(coerce_or(subtotal, 0))
    discount_total = to_money(discount_total)
    tax_amount = to_money(tax_amount)
    shipping_amount = to_money(coerce_or(shipping_amount, 0))
    final_price = max(Decimal("0.00"), subtotal - discount_total) + tax_amount + shipping_amount

    totals = OrderTotals(
        subtotal=subtotal,
        discount_total=discount_total,
        tax_amount=tax_amount,
        shipping_amount=shipping_amount,
        final_price=final_price,
    )
    for name in ("subtotal", "discount_total", "tax_amount", "shipping_amount", "final_price"):
        value = getattr(totals, name)
        if value < cfg.AMOUNT_MIN or value > cfg.AMOUNT_MAX:
            raise PricingInvariantError(
                f"{name}={value} outside [{cfg.AMOUNT_MIN}, {cfg.AMOUNT_MAX}]"
            )
    return totals


def build_order_items(
    order_id: str, lines: List[CartLine], discount_total: Decimal, cfg: PricingConfig = config
) -> List[OrderItem]:
    """
    Order lines, with the order discount spread over them by line total.

    Shares are rounded down to the cent; the cents left over go to the largest
    line (the last one on a tie), so no share is negative and they sum to
    discount_total.
    """
    subtotal = sum((line.total for line in lines), Decimal("0"))
    shares: List[Decimal] = []
    for line in lines:
        if not cfg.QUANTITY_MIN <= line.quantity <= cfg.QUANTITY_MAX:
            raise PricingInvariantError(f"Quantity {line.quantity} for {line.product_id} out of range")
        if not cfg.PRICE_MIN <= line.unit_price <= cfg.PRICE_MAX:
            raise PricingInvariantError(f"Unit price {line.unit_price} for {line.product_id} out of range")
        if not subtotal or not discount_total:
            shares.append(Decimal("0.00"))
        else:
            shares.append((discount_total * line.total / subtotal).quantize(CENT, rounding=ROUND_DOWN))

    if subtotal and discount_total:
        largest = max(reversed(range(len(lines))), key=lambda index: lines[index].total)
        shares[largest] += discount_total - sum(shares, Decimal("0"))

    return [
        OrderItem(
            order_id=order_id,
            product_id=line.product_id,
            variant_id=line.variant_id,
            quantity=line.quantity,
            unit_price=to_money(line.unit_price),
            total=to_money(line.total),
            discount_amount=share,
        )
        for line, share in zip(lines, shares)
    ]


@dataclass(slots=True)
class PricedOrder:
    context: DiscountApplicationContext
    discount: Optional[CalculationResult]
    tax: TaxResult
    totals: OrderTotals


class Step(ABC):
    def __init__(self, store: Store, order_id: str):
        self.store = store
        self.order_id = order_id

    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    def execute(self) -> None: ...

    @abstractmethod
    def compensate(self) -> None: ...

    def run(self) -> None:
        self.store.log(f"[order={self.order_id}] STEP {self.name()}")
        self.execute()
        self.store.log(f"[order={self.order_id}] STEP {self.name()} OK")

    def run_compensation(self) -> None:
        self.store.log(f"[order={self.order_id}] COMPENSATE {self.name()}")
        self.compensate()
        self.store.log(f"[order={self.order_id}] COMPENSATE {self.name()} OK")


class CreateOrder(Step):
    def __init__(self, store: Store, order: Order):
        super().__init__(store, order.id)
        self.order = order

    def name(self) -> str:
        return "CreateOrder"

    def execute(self) -> None:
        self.store.create_order(self.order)

    def compensate(self) -> None:
        self.store.delete_order(self.order_id)


class RecordDiscountUsage(Step):
    def __init__(self, store: Store, order: Order, discount_id: str, now: Optional[datetime] = None):
        super().__init__(store, order.id)
        self.order = order
        self.discount_id = discount_id
        self.now = now
        self.service = DiscountsService(store)

    def name(self) -> str:
        return "RecordDiscountUsage"

    def execute(self) -> None:
        self.service.record_discount_usage(
            self.discount_id,
            self.order.user_id,
            self.order.id,
            self.order.totals.discount_total,
            self.order.totals.final_price,
            now=self.now,
        )

    def compensate(self) -> None:
        # The usage ledger is append-only.
        self.store.log(f"[order={self.order_id}] discount usage has no compensation")


class CheckoutOrchestrator:
    def __init__(self, store: Store, cfg: Optional[PricingConfig] = None):
        self.store = store
        self.config = cfg or store.config
        self.discounts = DiscountsService(store)
        self.taxes = TaxService(store)

    def price(self, req: CheckoutRequest, now: Optional[datetime] = None) -> PricedOrder:
        """
        Quote the order without writing anything. Tax is charged on the discounted
        goods amount in cents (subtotal - discount_total, as recorded on the order);
        shipping only enters a rate's base when the rate says so.
        """
        context = DiscountApplicationContext.from_cart(req.user_id, req.lines)
        discount: Optional[CalculationResult] = None
        taxable = to_money(context.subtotal)
        if req.discount_code:
            discount = self.discounts.apply_discount_to_order(req.discount_code, context, now)
            if discount.is_valid:
                taxable = max(Decimal("0.00"), taxable - to_money(discount.discount_amount))

        shipping = to_money(coerce_or(req.shipping_amount, self.config.DEFAULT_SHIPPING_AMOUNT))
        tax = self.taxes.calculate_tax(
            TaxCalculationContext(
                amount=taxable, country=req.country, state=req.state, zip_code=req.zip_code, shipping=shipping
            )
        )
        totals = assemble_totals(context.subtotal, discount, tax, shipping, self.config)
        return PricedOrder(context=context, discount=discount, tax=tax, totals=totals)

    def place_order(
        self, req: CheckoutRequest, now: Optional[datetime] = None, fail_at_step: Optional[str] = None
    ) -> Order:
        order_id = req.order_id or new_id()
        self.store.log(
            f"[order={order_id}] CHECKOUT START user={req.user_id} lines={len(req.lines)} code={req.discount_code}"
        )
        if not req.lines:
            raise CheckoutError("Cart is empty")
        currency = req.currency or self.config.DEFAULT_CURRENCY
        if currency not in self.config.CURRENCIES:
            raise CheckoutError(f"Unsupported currency {currency}")

        try:
            priced = self.price(req, now)
        except PricingInvariantError as e:
            self.store.log(f"[order={order_id}] CHECKOUT REFUSED: {e}")
            raise CheckoutError(f"Order totals failed validation: {e}") from e

        if priced.discount is not None and not priced.discount.is_valid:
            self.store.log(f"[order={order_id}] CHECKOUT REFUSED: discount {req.discount_code}: {priced.discount.reason}")
            raise CheckoutError(f"Discount code {req.discount_code}: {priced.discount.reason}")
        if self.config.REQUIRE_TAX_RATE and not priced.tax.applicable_taxes:
            self.store.log(f"[order={order_id}] CHECKOUT REFUSED: no tax rate for location")
            raise CheckoutError("No tax rate applies to the shipping location")

        totals = priced.totals
        self.store.log(
            f"[order={order_id}] totals: subtotal={totals.subtotal} discount={totals.discount_total} "
            f"tax={totals.tax_amount} shipping={totals.shipping_amount} final={totals.final_price}"
        )

        applied = priced.discount.applied_discount if priced.discount is not None else None
        try:
            items = build_order_items(order_id, req.lines, totals.discount_total, self.config)
        except PricingInvariantError as e:
            self.store.log(f"[order={order_id}] CHECKOUT REFUSED: {e}")
            raise CheckoutError(str(e)) from e

        order = Order(
            id=order_id,
            order_code=generate_order_code(),
            user_id=req.user_id,
            totals=totals,
            items=items,
            currency=currency,
            payment_method=req.payment_method,
            discount_code=applied.code if applied else None,
            created_at=now or utcnow(),
        )

        steps: List[Step] = [CreateOrder(self.store, order)]
        if applied:
            steps.append(RecordDiscountUsage(self.store, order, applied.id, now))

        completed: List[Step] = []
        try:
            for step in steps:
                if fail_at_step == step.name():
                    raise CheckoutError(f"Artificial failure at step {step.name()}")
                step.run()
                completed.append(step)
        except Exception as e:
            self.store.log(f"[order={order_id}] CHECKOUT FAILED: {e}")
            for step in reversed(completed):
                try:
                    step.run_compensation()
                except Exception as comp_exc:
                    self.store.log(f"[order={order_id}] COMPENSATION FAILED at {step.name()}: {comp_exc}")
            raise CheckoutError(f"Order {order_id} was not placed: {e}") from e

        self.store.log(f"[order={order_id}] CHECKOUT OK")
        return order
