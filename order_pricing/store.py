from __future__ import annotations

import dataclasses
import logging
import threading
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Set

from order_pricing.config import PricingConfig, config
from order_pricing.errors import DocumentNotFound, InvalidDocumentError, StoreError, UsageLimitExceeded
from order_pricing.models import (
    AppliesTo,
    Discount,
    DiscountType,
    DiscountUsage,
    Order,
    TaxRate,
    TaxRateFilter,
    UserDiscount,
)

logger = logging.getLogger(__name__)


def new_id() -> str:
    return uuid.uuid4().hex


class Store:
    """
    In-memory document store standing in for the hosted database.

    Holds discounts, tax rates, orders and the discount usage ledger, plus a list
    of log lines (for the demo and for tests). Records keep creation order, which
    is also the tie-break order for tax rates of equal priority.

    The only shared counter, Discount.usage_count, is changed exclusively through
    increment_discount_usage / release_discount_usage, both under the store lock.
    """

    def __init__(self, cfg: PricingConfig = config) -> None:
        self.config = cfg
        self.discounts: Dict[str, Discount] = {}
        self.tax_rates: Dict[str, TaxRate] = {}
        self.orders: Dict[str, Order] = {}
        self.usages: List[DiscountUsage] = []
        self.user_discounts: List[UserDiscount] = []

        self.logs: List[str] = []
        # Operation names that should raise StoreError (simulated outage).
        self.fail_on: Set[str] = set()

        self._codes: Dict[str, str] = {}
        self._lock = threading.Lock()

    def log(self, message: str) -> None:
        self.logs.append(message)
        logger.info(message)

    def _check_available(self, operation: str) -> None:
        if operation in self.fail_on:
            raise StoreError(f"Store operation {operation} is unavailable")

    # Discounts

    def find_discount_by_code(self, code: str) -> Optional[Discount]:
        self._check_available("find_discount_by_code")
        discount_id = self._codes.get(code)
        return self.discounts.get(discount_id) if discount_id else None

    def get_discount(self, discount_id: str) -> Discount:
        self._check_available("get_discount")
        discount = self.discounts.get(discount_id)
        if not discount:
            raise DocumentNotFound(f"Discount {discount_id} not found")
        return discount

    def list_discounts(self) -> List[Discount]:
        self._check_available("list_discounts")
        return list(self.discounts.values())

    def create_discount(self, discount: Discount) -> Discount:
        self._check_available("create_discount")
        if not discount.id:
            discount = dataclasses.replace(discount, id=new_id())
        self._validate_discount(discount)
        with self._lock:
            if discount.code in self._codes:
                raise InvalidDocumentError(f"Discount code {discount.code} already exists")
            self.discounts[discount.id] = discount
            self._codes[discount.code] = discount.id
        self.log(f"discount created: {discount.code} ({discount.discount_type.value} {discount.value})")
        return discount

    def update_discount(self, discount_id: str, **changes: Any) -> Discount:
        self._check_available("update_discount")
        if "usage_count" in changes or "id" in changes:
            raise InvalidDocumentError("usage_count and id cannot be changed through update_discount")
        with self._lock:
            current = self.discounts.get(discount_id)
            if not current:
                raise DocumentNotFound(f"Discount {discount_id} not found")
            updated = dataclasses.replace(current, **changes)
            self._validate_discount(updated)
            if updated.code != current.code:
                if updated.code in self._codes:
                    raise InvalidDocumentError(f"Discount code {updated.code} already exists")
                del self._codes[current.code]
                self._codes[updated.code] = discount_id
            self.discounts[discount_id] = updated
        self.log(f"discount updated: {updated.code} fields={sorted(changes)}")
        return updated

    def deactivate_discount(self, discount_id: str) -> Discount:
        return self.update_discount(discount_id, is_active=False)

    def deactivate_discounts(self, discount_ids: Iterable[str]) -> List[Discount]:
        """Deactivate several codes at once; nothing changes if any id is unknown."""
        self._check_available("deactivate_discounts")
        discount_ids = list(discount_ids)
        with self._lock:
            missing = [discount_id for discount_id in discount_ids if discount_id not in self.discounts]
            if missing:
                raise DocumentNotFound(f"Discounts not found: {', '.join(missing)}")
            updated = []
            for discount_id in discount_ids:
                discount = dataclasses.replace(self.discounts[discount_id], is_active=False)
                self.discounts[discount_id] = discount
                updated.append(discount)
        self.log(f"discounts deactivated: {', '.join(d.code for d in updated)}")
        return updated

    def increment_discount_usage(self, discount_id: str) -> Discount:
        """Atomically add one use, refusing to go past usage_limit."""
        self._check_available("increment_discount_usage")
        with self._lock:
            discount = self.discounts.get(discount_id)
            if not discount:
                raise DocumentNotFound(f"Discount {discount_id} not found")
            if discount.usage_limit is not None and discount.usage_count >= discount.usage_limit:
                raise UsageLimitExceeded(
                    f"Discount {discount.code} has reached its usage limit ({discount.usage_limit})"
                )
            discount.usage_count += 1
            count = discount.usage_count
        self.log(f"discount usage incremented: {discount.code} (count={count})")
        return discount

    def release_discount_usage(self, discount_id: str) -> None:
        with self._lock:
            discount = self.discounts.get(discount_id)
            if not discount or discount.usage_count <= 0:
                return
            discount.usage_count -= 1
            count = discount.usage_count
        self.log(f"discount usage released: {discount.code} (count={count})")

    def _validate_discount(self, discount: Discount) -> None:
        cfg = self.config
        if not discount.code or not discount.code.strip():
            raise InvalidDocumentError("Discount code is required")
        if not isinstance(discount.discount_type, DiscountType):
            raise InvalidDocumentError("Invalid discount type")
        if not cfg.DISCOUNT_VALUE_MIN <= discount.value <= cfg.DISCOUNT_VALUE_MAX:
            raise InvalidDocumentError(
                f"Discount value must be between {cfg.DISCOUNT_VALUE_MIN} and {cfg.DISCOUNT_VALUE_MAX}"
            )
        if discount.discount_type is DiscountType.PERCENTAGE and discount.value > 100:
            raise InvalidDocumentError("Percentage discount cannot exceed 100%")
        for name in ("min_order_amount", "max_discount_amount"):
            amount = getattr(discount, name)
            if amount is not None and amount < 0:
                raise InvalidDocumentError(f"{name} cannot be negative")
        if discount.usage_limit is not None and not (
            cfg.USAGE_LIMIT_MIN <= discount.usage_limit <= cfg.USAGE_LIMIT_MAX
        ):
            raise InvalidDocumentError(
                f"Usage limit must be between {cfg.USAGE_LIMIT_MIN} and {cfg.USAGE_LIMIT_MAX}"
            )
        if discount.usage_count < 0:
            raise InvalidDocumentError("Usage count cannot be negative")
        if discount.usage_limit is not None and discount.usage_count > discount.usage_limit:
            raise InvalidDocumentError("Usage count cannot exceed the usage limit")
        if discount.start_date >= discount.end_date:
            raise InvalidDocumentError("End date must be after start date")
        if not isinstance(discount.applies_to, AppliesTo):
            raise InvalidDocumentError("appliesTo must be parsed before storing")

    # Usage ledger

    def append_discount_usage(self, usage: DiscountUsage) -> DiscountUsage:
        self._check_available("append_discount_usage")
        with self._lock:
            if any(u.order_id == usage.order_id and u.discount_id == usage.discount_id for u in self.usages):
                raise StoreError(f"Usage for order {usage.order_id} already recorded")
            self.usages.append(usage)
        return usage

    def list_discount_usages(
        self,
        discount_id: Optional[str] = None,
        user_id: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> List[DiscountUsage]:
        self._check_available("list_discount_usages")
        result = []
        for usage in self.usages:
            if discount_id is not None and usage.discount_id != discount_id:
                continue
            if user_id is not None and usage.user_id != user_id:
                continue
            if order_id is not None and usage.order_id != order_id:
                continue
            result.append(usage)
        return result

    # User assignments

    def append_user_discount(self, assignment: UserDiscount) -> UserDiscount:
        self._check_available("append_user_discount")
        with self._lock:
            if assignment.discount_id not in self.discounts:
                raise DocumentNotFound(f"Discount {assignment.discount_id} not found")
            self.user_discounts.append(assignment)
        self.log(f"discount {assignment.discount_id} assigned to user {assignment.user_id}")
        return assignment

    def list_user_discounts(
        self, user_id: Optional[str] = None, discount_id: Optional[str] = None
    ) -> List[UserDiscount]:
        self._check_available("list_user_discounts")
        return [
            a
            for a in self.user_discounts
            if (user_id is None or a.user_id == user_id) and (discount_id is None or a.discount_id == discount_id)
        ]

    def delete_user_discounts(self, user_id: str, discount_id: str) -> int:
        self._check_available("delete_user_discounts")
        with self._lock:
            kept = [a for a in self.user_discounts if not (a.user_id == user_id and a.discount_id == discount_id)]
            removed = len(self.user_discounts) - len(kept)
            self.user_discounts = kept
        if removed:
            self.log(f"discount {discount_id} removed from user {user_id}")
        return removed

    # Tax rates

    def find_tax_rates(self, rate_filter: TaxRateFilter) -> List[TaxRate]:
        self._check_available("find_tax_rates")
        return [rate for rate in self.tax_rates.values() if rate_filter.matches(rate)]

    def list_tax_rates(self) -> List[TaxRate]:
        self._check_available("list_tax_rates")
        return list(self.tax_rates.values())

    def create_tax_rate(self, rate: TaxRate) -> TaxRate:
        self._check_available("create_tax_rate")
        if not rate.id:
            rate = dataclasses.replace(rate, id=new_id())
        self._validate_tax_rate(rate)
        with self._lock:
            self.tax_rates[rate.id] = rate
        self.log(f"tax rate created: {rate.name} rate={rate.rate} priority={rate.priority}")
        return rate

    def update_tax_rate(self, rate_id: str, **changes: Any) -> TaxRate:
        self._check_available("update_tax_rate")
        if "id" in changes:
            raise InvalidDocumentError("id cannot be changed")
        with self._lock:
            current = self.tax_rates.get(rate_id)
            if not current:
                raise DocumentNotFound(f"Tax rate {rate_id} not found")
            updated = dataclasses.replace(current, **changes)
            self._validate_tax_rate(updated)
            self.tax_rates[rate_id] = updated
        self.log(f"tax rate updated: {updated.name} fields={sorted(changes)}")
        return updated

    def activate_tax_rate(self, rate_id: str) -> TaxRate:
        return self.update_tax_rate(rate_id, is_active=True)

    def deactivate_tax_rate(self, rate_id: str) -> TaxRate:
        return self.update_tax_rate(rate_id, is_active=False)

    def _validate_tax_rate(self, rate: TaxRate) -> None:
        cfg = self.config
        if not rate.name or not rate.name.strip():
            raise InvalidDocumentError("Tax rate name is required")
        if not cfg.TAX_RATE_MIN <= rate.rate <= cfg.TAX_RATE_MAX:
            raise InvalidDocumentError(f"Tax rate must be between {cfg.TAX_RATE_MIN} and {cfg.TAX_RATE_MAX}")
        if not cfg.TAX_PRIORITY_MIN <= rate.priority <= cfg.TAX_PRIORITY_MAX:
            raise InvalidDocumentError(
                f"Tax priority must be between {cfg.TAX_PRIORITY_MIN} and {cfg.TAX_PRIORITY_MAX}"
            )

    # Orders

    def create_order(self, order: Order) -> Order:
        self._check_available("create_order")
        with self._lock:
            if order.id in self.orders:
                raise StoreError(f"Order {order.id} already exists")
            self.orders[order.id] = order
        self.log(f"[order={order.id}] order stored: code={order.order_code} final={order.totals.final_price}")
        return order

    def get_order(self, order_id: str) -> Order:
        self._check_available("get_order")
        order = self.orders.get(order_id)
        if not order:
            raise DocumentNotFound(f"Order {order_id} not found")
        return order

    def delete_order(self, order_id: str) -> None:
        with self._lock:
            order = self.orders.pop(order_id, None)
        if order:
            self.log(f"[order={order_id}] order deleted")

    # Seed helpers (handy for tests and the demo)

    def add_discount(
        self,
        code: str,
        discount_type: DiscountType,
        value: Decimal,
        start_date: datetime,
        end_date: datetime,
        **fields: Any,
    ) -> Discount:
        return self.create_discount(
            Discount(
                id=fields.pop("id", ""),
                code=code,
                discount_type=discount_type,
                value=Decimal(value),
                start_date=start_date,
                end_date=end_date,
                **fields,
            )
        )

    def add_tax_rate(self, name: str, rate: Decimal, **fields: Any) -> TaxRate:
        return self.create_tax_rate(TaxRate(id=fields.pop("id", ""), name=name, rate=Decimal(rate), **fields))
