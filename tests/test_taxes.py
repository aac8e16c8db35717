"""Tests for tax rate resolution and tax calculation."""
from decimal import Decimal

import pytest

from order_pricing.errors import DocumentNotFound
from order_pricing.models import TaxCalculationContext, TaxRate
from order_pricing.services import TaxService


def test_rates_summed_and_ordered_by_priority(store):
    service = TaxService(store)
    result = service.calculate_tax(
        TaxCalculationContext(amount=Decimal("100"), shipping=Decimal("10"), country="US", state="CA")
    )

    # 100 * 7% + (100 + 10) * 2%
    assert result.tax_amount == Decimal("9.2")
    assert result.total_rate == Decimal("9")
    assert [line.tax_rate.id for line in result.breakdown] == ["t-us", "t-ca"]
    assert [line.amount for line in result.breakdown] == [Decimal("7"), Decimal("2.2")]
    assert [rate.id for rate in result.applicable_taxes] == ["t-us", "t-ca"]


def test_resolver_skips_inactive_and_other_locations(store):
    service = TaxService(store)

    us_only = service.get_applicable_tax_rates(TaxCalculationContext(amount=50, country="US", state="NY"))
    assert [rate.id for rate in us_only] == ["t-us"]

    vietnam = service.get_applicable_tax_rates(TaxCalculationContext(amount=50, country="VN"))
    assert [rate.id for rate in vietnam] == ["t-vn"]


def test_missing_scope_is_a_wildcard(store):
    store.add_tax_rate("Everywhere", Decimal("1"), id="t-all", priority=1)
    store.add_tax_rate("Zip 94110", Decimal("0.5"), id="t-zip", country="US", zip_code="94110", priority=80)
    service = TaxService(store)

    rates = service.get_applicable_tax_rates(
        TaxCalculationContext(amount=10, country="US", state="CA", zip_code="94110")
    )
    assert [rate.id for rate in rates] == ["t-zip", "t-us", "t-ca", "t-all"]

    nowhere = service.get_applicable_tax_rates(TaxCalculationContext(amount=10, country="FR"))
    assert [rate.id for rate in nowhere] == ["t-all"]


def test_equal_priority_keeps_creation_order(store):
    store.add_tax_rate("City A", Decimal("1"), id="t-a", country="VN", priority=10)
    store.add_tax_rate("City B", Decimal("1"), id="t-b", country="VN", priority=10)
    service = TaxService(store)

    rates = service.get_applicable_tax_rates(TaxCalculationContext(amount=10, country="VN"))
    assert [rate.id for rate in rates] == ["t-vn", "t-a", "t-b"]


def test_no_matching_rate_means_zero_tax(store):
    service = TaxService(store)
    result = service.calculate_tax(TaxCalculationContext(amount=Decimal("80"), country="JP"))

    assert result.tax_amount == 0
    assert result.breakdown == []
    assert service.get_total_tax_rate(TaxCalculationContext(amount=1, country="JP")) == 0


def test_store_outage_returns_zeroed_result(store):
    store.fail_on.add("find_tax_rates")
    service = TaxService(store)

    result = service.calculate_tax(TaxCalculationContext(amount=Decimal("100"), country="US", state="CA"))
    assert result.tax_amount == 0
    assert result.total_rate == 0
    assert result.applicable_taxes == []
    assert result.breakdown == []


def test_loose_amounts_are_coerced(store):
    service = TaxService(store)
    result = service.calculate_tax(TaxCalculationContext(amount="$100.00", shipping="", country="US", state=""))

    assert result.tax_amount == Decimal("7")


def test_tax_rate_from_document():
    rate = TaxRate.from_document(
        {"$id": "r1", "name": "TX", "rate": "6.25%", "country": "US", "state": "TX", "zipCode": "",
         "isActive": "true", "appliesToShipping": False, "priority": "20"}
    )
    assert rate.rate == Decimal("6.25")
    assert rate.zip_code is None
    assert rate.is_active is True
    assert rate.priority == 20


def test_admin_rate_queries(store):
    store.add_tax_rate("SF city", Decimal("1"), id="t-sf", country="US", state="CA", zip_code="94103", priority=1)
    service = TaxService(store)

    assert [r.id for r in service.get_tax_rates_by_country("US")] == ["t-old", "t-us", "t-ca", "t-sf"]
    assert [r.id for r in service.get_tax_rates_by_state("US", "CA")] == ["t-ca", "t-sf"]
    assert [r.id for r in service.get_tax_rates_by_zip_code("94103")] == ["t-sf"]
    assert [r.id for r in service.get_active_tax_rates()] == ["t-us", "t-vn", "t-ca", "t-sf"]
    assert [r.id for r in service.get_inactive_tax_rates()] == ["t-old"]


def test_activate_and_bulk_toggle_rates(store):
    service = TaxService(store)

    assert service.activate_tax_rate("t-old").is_active is True
    assert service.get_inactive_tax_rates() == []

    service.bulk_deactivate_tax_rates(["t-us", "t-ca"])
    assert [r.id for r in service.get_inactive_tax_rates()] == ["t-us", "t-ca"]
    result = service.calculate_tax(TaxCalculationContext(amount=Decimal("100"), country="US", state="CA"))
    assert [rate.id for rate in result.applicable_taxes] == ["t-old"]

    service.bulk_activate_tax_rates(["t-us", "t-ca"])
    assert service.get_inactive_tax_rates() == []

    with pytest.raises(DocumentNotFound):
        service.bulk_deactivate_tax_rates(["missing"])
