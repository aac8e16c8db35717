from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, List, Mapping, Optional, Tuple

from order_pricing.coercion import coerce_or, to_money
from order_pricing.errors import PricingError, PricingInvariantError, StoreError
from order_pricing.models import (
    CalculationResult,
    Discount,
    DiscountApplicationContext,
    DiscountType,
    DiscountUsage,
    TaxBreakdownLine,
    TaxCalculationContext,
    TaxRate,
    TaxResult,
    UsageStatus,
    UserDiscount,
    ValidationResult,
    parse_instant,
)
from order_pricing.store import Store, new_id

logger = logging.getLogger(__name__)

CODE_NOT_FOUND = "code not found"
NOT_ACTIVE = "not active"
NOT_YET_ACTIVE = "not yet active"
EXPIRED = "expired"
USAGE_LIMIT_REACHED = "usage limit reached"
MIN_ORDER_NOT_MET = "minimum order amount not met"
NOT_APPLICABLE = "does not apply to items in cart"
VALIDATION_FAILED = "failed to validate"
CALCULATION_FAILED = "failed to calculate"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _instant(now: Any = None) -> datetime:
    return utcnow() if now is None else parse_instant(now)


@dataclass(slots=True)
class DiscountStatistics:
    total_discounts: int
    active_discounts: int
    expired_discounts: int
    total_usage: int
    total_discount_amount: Decimal
    most_used_discount: Optional[Discount] = None
    top_discounts_by_usage: List[Tuple[Discount, int, Decimal]] = field(default_factory=list)


class DiscountsService:
    def __init__(self, store: Store):
        self.store = store

    def validate_discount_code(
        self, code: str, context: DiscountApplicationContext, now: Optional[datetime] = None
    ) -> ValidationResult:
        """
        Checks run in a fixed order and stop at the first failure; the order decides
        which reason the shopper sees. Store failures turn into a generic rejection.
        """
        now = _instant(now)
        try:
            discount = self.store.find_discount_by_code(code)
            if not discount:
                return ValidationResult.reject(CODE_NOT_FOUND)
            return self._check_eligibility(discount, context, now)
        except Exception:
            logger.exception("Error validating discount code %r", code)
            return ValidationResult.reject(VALIDATION_FAILED)

    @staticmethod
    def _check_eligibility(
        discount: Discount, context: DiscountApplicationContext, now: datetime
    ) -> ValidationResult:
        if not discount.is_active:
            return ValidationResult.reject(NOT_ACTIVE)
        if now < discount.start_date:
            return ValidationResult.reject(NOT_YET_ACTIVE)
        if now > discount.end_date:
            return ValidationResult.reject(EXPIRED)
        if discount.usage_limit is not None and discount.usage_count >= discount.usage_limit:
            return ValidationResult.reject(USAGE_LIMIT_REACHED)
        if discount.min_order_amount is not None and context.subtotal < discount.min_order_amount:
            return ValidationResult.reject(
                f"{MIN_ORDER_NOT_MET}: ${to_money(discount.min_order_amount)} required"
            )
        if not discount.applies_to.covers(context.product_ids, context.category_ids):
            return ValidationResult.reject(NOT_APPLICABLE)
        return ValidationResult.accept(discount)

    def calculate_discount_amount(
        self, discount: Discount, subtotal: Any, context: Optional[DiscountApplicationContext] = None
    ) -> CalculationResult:
        base = coerce_or(subtotal, 0)
        try:
            if base < 0:
                raise ValueError(f"Negative subtotal {base}")
            if discount.discount_type is DiscountType.PERCENTAGE:
                amount = base * discount.value / 100
                if discount.max_discount_amount is not None and amount > discount.max_discount_amount:
                    amount = discount.max_discount_amount
            elif discount.discount_type is DiscountType.FIXED:
                amount = min(discount.value, base)
            else:
                raise ValueError(f"Unknown discount type {discount.discount_type!r}")
            return CalculationResult(
                is_valid=True,
                discount_amount=amount,
                final_amount=max(Decimal("0"), base - amount),
                applied_discount=discount,
            )
        except Exception:
            logger.exception("Error calculating discount amount for %s", discount.code)
            return CalculationResult(
                is_valid=False, discount_amount=Decimal("0"), final_amount=base, reason=CALCULATION_FAILED
            )

    def apply_discount_to_order(
        self, code: str, context: DiscountApplicationContext, now: Optional[datetime] = None
    ) -> CalculationResult:
        validation = self.validate_discount_code(code, context, now)
        if not validation.accepted or not validation.discount:
            return CalculationResult(
                is_valid=False,
                discount_amount=Decimal("0"),
                final_amount=context.subtotal,
                reason=validation.reason,
            )
        return self.calculate_discount_amount(validation.discount, context.subtotal, context)

    def record_discount_usage(
        self,
        discount_id: str,
        user_id: str,
        order_id: str,
        discount_amount: Any,
        order_total: Any,
        now: Optional[datetime] = None,
    ) -> DiscountUsage:
        """
        Append a COMPLETED usage record and advance the discount's usage counter.

        The counter moves first through the store's atomic increment-with-ceiling,
        so concurrent redemptions cannot overshoot usage_limit; the loser gets
        UsageLimitExceeded. If the ledger write fails the increment is released.
        """
        if self.store.list_discount_usages(discount_id=discount_id, order_id=order_id):
            raise PricingInvariantError(f"Discount usage for order {order_id} already recorded")

        discount = self.store.increment_discount_usage(discount_id)
        usage = DiscountUsage(
            id=new_id(),
            discount_id=discount_id,
            user_id=user_id,
            order_id=order_id,
            order_total=coerce_or(order_total, 0),
            discount_amount=coerce_or(discount_amount, 0),
            used_at=_instant(now),
            usage_status=UsageStatus.COMPLETED,
        )
        try:
            self.store.append_discount_usage(usage)
        except StoreError:
            self.store.release_discount_usage(discount_id)
            raise
        self.store.log(
            f"[order={order_id}] discount usage recorded: {discount.code} amount={usage.discount_amount}"
        )
        return usage

    # Queries

    def get_active_discounts(self, now: Optional[datetime] = None) -> List[Discount]:
        now = _instant(now)
        return [d for d in self.store.list_discounts() if d.is_running(now)]

    def get_expired_discounts(self, now: Optional[datetime] = None) -> List[Discount]:
        now = _instant(now)
        return [d for d in self.store.list_discounts() if d.is_expired(now)]

    def get_discounts_by_type(self, discount_type: DiscountType) -> List[Discount]:
        return [d for d in self.store.list_discounts() if d.discount_type is discount_type]

    def get_discount_usage(
        self,
        discount_id: Optional[str] = None,
        user_id: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> List[DiscountUsage]:
        return self.store.list_discount_usages(discount_id=discount_id, user_id=user_id, order_id=order_id)

    def get_discounts_by_date_range(self, start: Any, end: Any) -> List[Discount]:
        """Discounts whose whole validity window lies inside [start, end]."""
        start, end = parse_instant(start), parse_instant(end)
        return [d for d in self.store.list_discounts() if d.start_date >= start and d.end_date <= end]

    # User assignments

    def assign_discount_to_user(self, user_id: str, discount_id: str, now: Optional[datetime] = None) -> UserDiscount:
        return self.store.append_user_discount(
            UserDiscount(id=new_id(), user_id=user_id, discount_id=discount_id, created_at=_instant(now))
        )

    def get_user_discounts(self, user_id: str) -> List[Discount]:
        discount_ids = {a.discount_id for a in self.store.list_user_discounts(user_id=user_id)}
        return [d for d in self.store.list_discounts() if d.id in discount_ids]

    def remove_user_discount(self, user_id: str, discount_id: str) -> int:
        return self.store.delete_user_discounts(user_id, discount_id)

    # Bulk operations: each record stands alone, failures are logged and skipped.

    def bulk_create_discounts(self, discounts: Iterable[Discount]) -> List[Discount]:
        created = []
        for discount in discounts:
            try:
                created.append(self.store.create_discount(discount))
            except PricingError as e:
                logger.warning("Skipping discount %s: %s", discount.code, e)
        return created

    def bulk_update_discounts(self, updates: Iterable[Tuple[str, Mapping[str, Any]]]) -> List[Discount]:
        updated = []
        for discount_id, changes in updates:
            try:
                updated.append(self.store.update_discount(discount_id, **changes))
            except PricingError as e:
                logger.warning("Skipping update of discount %s: %s", discount_id, e)
        return updated

    def bulk_deactivate_discounts(self, discount_ids: Iterable[str]) -> List[Discount]:
        return self.bulk_update_discounts((discount_id, {"is_active": False}) for discount_id in discount_ids)

    # Reporting

    def get_discount_statistics(self, now: Optional[datetime] = None) -> DiscountStatistics:
        now = _instant(now)
        discounts = self.store.list_discounts()
        usages = self.store.list_discount_usages()

        top = self._rank_by_usage(usages, limit=10)
        return DiscountStatistics(
            total_discounts=len(discounts),
            active_discounts=sum(1 for d in discounts if d.is_running(now)),
            expired_discounts=sum(1 for d in discounts if d.is_expired(now)),
            total_usage=len(usages),
            total_discount_amount=sum((u.discount_amount for u in usages), Decimal("0")),
            most_used_discount=top[0][0] if top else None,
            top_discounts_by_usage=top,
        )

    def get_top_discounts_by_usage(self, limit: int = 10) -> List[Tuple[Discount, int]]:
        ranked = self._rank_by_usage(self.store.list_discount_usages(), limit)
        return [(discount, count) for discount, count, _ in ranked]

    def get_discount_revenue_impact(self, discount_id: str) -> Tuple[Decimal, int]:
        """(total discounted away, number of orders) for one discount."""
        usages = self.store.list_discount_usages(discount_id=discount_id)
        return sum((u.discount_amount for u in usages), Decimal("0")), len(usages)

    def _rank_by_usage(self, usages: List[DiscountUsage], limit: int) -> List[Tuple[Discount, int, Decimal]]:
        counts = Counter(u.discount_id for u in usages)
        ranked = []
        for discount_id, count in counts.most_common():
            discount = self.store.discounts.get(discount_id)
            if not discount:
                continue
            amount = sum((u.discount_amount for u in usages if u.discount_id == discount_id), Decimal("0"))
            ranked.append((discount, count, amount))
            if len(ranked) >= limit:
                break
        return ranked

    def cleanup_expired_discounts(self, now: Optional[datetime] = None) -> int:
        """Soft-deactivate expired codes; usage records keep referencing them."""
        expired = [d for d in self.get_expired_discounts(now) if d.is_active]
        for discount in expired:
            self.store.deactivate_discount(discount.id)
        return len(expired)


class TaxService:
    def __init__(self, store: Store):
        self.store = store

    def get_applicable_tax_rates(self, context: TaxCalculationContext) -> List[TaxRate]:
        """Active rates matching the location, highest priority first (ties keep creation order)."""
        rates = self.store.find_tax_rates(context.rate_filter())
        return sorted(rates, key=lambda rate: rate.priority, reverse=True)

    def calculate_tax(self, context: TaxCalculationContext) -> TaxResult:
        try:
            rates = self.get_applicable_tax_rates(context)
            breakdown: List[TaxBreakdownLine] = []
            tax_amount = Decimal("0")
            total_rate = Decimal("0")
            for rate in rates:
                base = context.amount + context.shipping if rate.applies_to_shipping else context.amount
                amount = base * (rate.rate / 100)
                breakdown.append(TaxBreakdownLine(tax_rate=rate, amount=amount))
                tax_amount += amount
                total_rate += rate.rate
            return TaxResult(
                tax_amount=tax_amount, applicable_taxes=rates, total_rate=total_rate, breakdown=breakdown
            )
        except Exception:
            logger.exception("Error calculating tax for %s/%s/%s", context.country, context.state, context.zip_code)
            return TaxResult.zero()

    def get_total_tax_rate(self, context: TaxCalculationContext) -> Decimal:
        return self.calculate_tax(context).total_rate

    # Admin queries: exact field matches, active or not, highest priority first.

    def _list_rates(self, **fields: Any) -> List[TaxRate]:
        rates = [
            rate
            for rate in self.store.list_tax_rates()
            if all(getattr(rate, name) == value for name, value in fields.items())
        ]
        return sorted(rates, key=lambda rate: rate.priority, reverse=True)

    def get_tax_rates_by_country(self, country: str) -> List[TaxRate]:
        return self._list_rates(country=country)

    def get_tax_rates_by_state(self, country: str, state: str) -> List[TaxRate]:
        return self._list_rates(country=country, state=state)

    def get_tax_rates_by_zip_code(self, zip_code: str) -> List[TaxRate]:
        return self._list_rates(zip_code=zip_code)

    def get_active_tax_rates(self) -> List[TaxRate]:
        return self._list_rates(is_active=True)

    def get_inactive_tax_rates(self) -> List[TaxRate]:
        return self._list_rates(is_active=False)

    def activate_tax_rate(self, rate_id: str) -> TaxRate:
        return self.store.activate_tax_rate(rate_id)

    def deactivate_tax_rate(self, rate_id: str) -> TaxRate:
        return self.store.deactivate_tax_rate(rate_id)

    def bulk_activate_tax_rates(self, rate_ids: Iterable[str]) -> List[TaxRate]:
        return [self.activate_tax_rate(rate_id) for rate_id in rate_ids]

    def bulk_deactivate_tax_rates(self, rate_ids: Iterable[str]) -> List[TaxRate]:
        return [self.deactivate_tax_rate(rate_id) for rate_id in rate_ids]
