from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, FrozenSet, Iterable, List, Mapping, Optional

from order_pricing.coercion import coerce, coerce_or


class DiscountType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


class UsageStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, Enum):
    COD = "COD"
    ONLINE = "ONLINE"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"


def parse_instant(value: Any) -> datetime:
    """ISO-8601 string or datetime -> timezone-aware datetime (naive means UTC)."""
    if isinstance(value, datetime):
        instant = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        instant = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Not a date: {value!r}")
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant


def _blank_to_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_int(value: Any) -> Optional[int]:
    number = coerce(value)
    return None if number is None else int(number)


def _flag(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@dataclass(slots=True)
class AppliesTo:
    all_products: bool = True
    product_ids: FrozenSet[str] = frozenset()
    category_ids: FrozenSet[str] = frozenset()

    @classmethod
    def from_value(cls, value: Any) -> AppliesTo:
        """
        Accepts the stored JSON blob, a plain mapping or an AppliesTo.
        Missing data means the discount covers every product.
        """
        if isinstance(value, AppliesTo):
            return value
        if value is None or value == "":
            return cls()
        if isinstance(value, str):
            value = json.loads(value)
        if not isinstance(value, Mapping):
            raise ValueError(f"Unsupported appliesTo value: {value!r}")
        all_products = value.get("allProducts", value.get("all_products", True))
        product_ids = value.get("productIds", value.get("product_ids")) or ()
        category_ids = value.get("categoryIds", value.get("category_ids")) or ()
        return cls(
            all_products=_flag(all_products, True),
            product_ids=frozenset(str(pid) for pid in product_ids),
            category_ids=frozenset(str(cid) for cid in category_ids),
        )

    def covers(self, product_ids: Iterable[str], category_ids: Iterable[str] = ()) -> bool:
        if self.all_products:
            return True
        if self.product_ids.intersection(product_ids):
            return True
        return bool(self.category_ids.intersection(category_ids))


@dataclass(slots=True)
class Discount:
    id: str
    code: str
    discount_type: DiscountType
    value: Decimal
    start_date: datetime
    end_date: datetime
    is_active: bool = True
    min_order_amount: Optional[Decimal] = None
    max_discount_amount: Optional[Decimal] = None
    usage_limit: Optional[int] = None
    usage_count: int = 0
    applies_to: AppliesTo = field(default_factory=AppliesTo)
    created_by: str = ""
    description: str = ""

    def __post_init__(self) -> None:
        self.start_date = parse_instant(self.start_date)
        self.end_date = parse_instant(self.end_date)

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> Discount:
        return cls(
            id=str(doc.get("$id") or doc.get("id") or ""),
            code=str(doc["code"]),
            discount_type=DiscountType(str(doc.get("discountType", doc.get("discount_type"))).upper()),
            value=coerce_or(doc.get("value"), 0),
            start_date=doc.get("startDate", doc.get("start_date")),
            end_date=doc.get("endDate", doc.get("end_date")),
            is_active=_flag(doc.get("isActive", doc.get("is_active")), True),
            min_order_amount=coerce(doc.get("minOrderAmount", doc.get("min_order_amount"))),
            max_discount_amount=coerce(doc.get("maxDiscountAmount", doc.get("max_discount_amount"))),
            usage_limit=_optional_int(doc.get("usageLimit", doc.get("usage_limit"))),
            usage_count=int(coerce_or(doc.get("usageCount", doc.get("usage_count")), 0)),
            applies_to=AppliesTo.from_value(doc.get("appliesTo", doc.get("applies_to"))),
            created_by=str(doc.get("createdBy", doc.get("created_by")) or ""),
            description=str(doc.get("description") or ""),
        )

    def is_expired(self, now: datetime) -> bool:
        return now > self.end_date

    def is_running(self, now: datetime) -> bool:
        return self.is_active and self.start_date <= now <= self.end_date


@dataclass(slots=True)
class TaxRate:
    id: str
    name: str
    rate: Decimal
    country: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    is_active: bool = True
    applies_to_shipping: bool = False
    priority: int = 0
    description: str = ""

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> TaxRate:
        return cls(
            id=str(doc.get("$id") or doc.get("id") or ""),
            name=str(doc.get("name") or ""),
            rate=coerce_or(doc.get("rate"), 0),
            country=_blank_to_none(doc.get("country")),
            state=_blank_to_none(doc.get("state")),
            zip_code=_blank_to_none(doc.get("zipCode", doc.get("zip_code"))),
            is_active=_flag(doc.get("isActive", doc.get("is_active")), True),
            applies_to_shipping=_flag(doc.get("appliesToShipping", doc.get("applies_to_shipping")), False),
            priority=int(coerce_or(doc.get("priority"), 0)),
            description=str(doc.get("description") or ""),
        )


@dataclass(slots=True)
class TaxRateFilter:
    """Query for tax rates. A rate with no country/state/zip matches any value."""

    is_active: Optional[bool] = True
    country: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None

    def matches(self, rate: TaxRate) -> bool:
        if self.is_active is not None and rate.is_active != self.is_active:
            return False
        if rate.country is not None and rate.country != self.country:
            return False
        if rate.state is not None and rate.state != self.state:
            return False
        if rate.zip_code is not None and rate.zip_code != self.zip_code:
            return False
        return True


@dataclass(slots=True)
class CartLine:
    product_id: str
    quantity: int
    unit_price: Decimal
    category_id: Optional[str] = None
    variant_id: Optional[str] = None

    def __post_init__(self) -> None:
        self.quantity = int(coerce_or(self.quantity, 0))
        self.unit_price = coerce_or(self.unit_price, 0)

    @property
    def total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(slots=True)
class DiscountApplicationContext:
    user_id: str
    subtotal: Decimal
    order_items: List[CartLine] = field(default_factory=list)
    product_ids: List[str] = field(default_factory=list)
    category_ids: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.subtotal = coerce_or(self.subtotal, 0)

    @classmethod
    def from_cart(cls, user_id: str, lines: List[CartLine]) -> DiscountApplicationContext:
        categories: List[str] = []
        for line in lines:
            if line.category_id and line.category_id not in categories:
                categories.append(line.category_id)
        return cls(
            user_id=user_id or "guest",
            subtotal=sum((line.total for line in lines), Decimal("0")),
            order_items=list(lines),
            product_ids=[line.product_id for line in lines],
            category_ids=categories,
        )


@dataclass(slots=True)
class TaxCalculationContext:
    amount: Decimal
    country: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    shipping: Decimal = Decimal("0")

    def __post_init__(self) -> None:
        self.amount = coerce_or(self.amount, 0)
        self.shipping = coerce_or(self.shipping, 0)
        self.country = _blank_to_none(self.country)
        self.state = _blank_to_none(self.state)
        self.zip_code = _blank_to_none(self.zip_code)

    def rate_filter(self) -> TaxRateFilter:
        return TaxRateFilter(is_active=True, country=self.country, state=self.state, zip_code=self.zip_code)


@dataclass(slots=True)
class ValidationResult:
    accepted: bool
    reason: Optional[str] = None
    discount: Optional[Discount] = None

    @classmethod
    def accept(cls, discount: Discount) -> ValidationResult:
        return cls(accepted=True, discount=discount)

    @classmethod
    def reject(cls, reason: str) -> ValidationResult:
        return cls(accepted=False, reason=reason)


@dataclass(slots=True)
class CalculationResult:
    is_valid: bool
    discount_amount: Decimal
    final_amount: Decimal
    reason: Optional[str] = None
    applied_discount: Optional[Discount] = None


@dataclass(slots=True)
class TaxBreakdownLine:
    tax_rate: TaxRate
    amount: Decimal


@dataclass(slots=True)
class TaxResult:
    tax_amount: Decimal
    applicable_taxes: List[TaxRate]
    total_rate: Decimal
    breakdown: List[TaxBreakdownLine]

    @classmethod
    def zero(cls) -> TaxResult:
        return cls(tax_amount=Decimal("0"), applicable_taxes=[], total_rate=Decimal("0"), breakdown=[])


@dataclass(slots=True)
class DiscountUsage:
    id: str
    discount_id: str
    user_id: str
    order_id: str
    order_total: Decimal
    discount_amount: Decimal
    used_at: datetime
    usage_status: UsageStatus = UsageStatus.COMPLETED


@dataclass(slots=True)
class UserDiscount:
    """A discount handed to one shopper (e.g. a loyalty or apology code)."""

    id: str
    user_id: str
    discount_id: str
    created_at: datetime


@dataclass(slots=True)
class OrderTotals:
    subtotal: Decimal
    discount_total: Decimal
    tax_amount: Decimal
    shipping_amount: Decimal
    final_price: Decimal


@dataclass(slots=True)
class OrderItem:
    order_id: str
    product_id: str
    quantity: int
    unit_price: Decimal
    total: Decimal
    discount_amount: Decimal = Decimal("0.00")
    variant_id: Optional[str] = None


@dataclass(slots=True)
class Order:
    id: str
    order_code: str
    user_id: str
    totals: OrderTotals
    items: List[OrderItem] = field(default_factory=list)
    status: OrderStatus = OrderStatus.PENDING
    currency: str = "USD"
    payment_method: PaymentMethod = PaymentMethod.COD
    payment_status: PaymentStatus = PaymentStatus.PENDING
    discount_code: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(slots=True)
class CheckoutRequest:
    """
    What the checkout page submits: cart, shipping location, optional code.
    The order id is assigned by the orchestrator unless given here.
    """

    user_id: str
    lines: List[CartLine]
    country: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    shipping_amount: Optional[Decimal] = None
    discount_code: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.COD
    currency: Optional[str] = None
    order_id: Optional[str] = None
