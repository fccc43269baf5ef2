"""Tests for catalog/ and tax/: plan lookup and tax rates."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from billing_lifecycle.catalog.catalog import EntitlementCatalog, InMemoryEntitlementCatalog
from billing_lifecycle.catalog.models import FeatureEntitlement, Plan
from billing_lifecycle.core.constants import BillingInterval
from billing_lifecycle.core.exceptions import ConfigurationError
from billing_lifecycle.tax.rates import StaticTaxRateProvider, TaxRate, TaxRateProvider

DOCUMENT = {
    "plans": [
        {
            "id": "team",
            "base_price": 4900,
            "interval": "year",
            "features": [{"id": "seats", "included_units": 10, "overage_rate": 500}],
        },
        {"id": "legacy", "base_price": 900, "active": False},
    ]
}


# ---------------------------------------------------------------------------
# InMemoryEntitlementCatalog
# ---------------------------------------------------------------------------


async def test_from_dict() -> None:
    catalog = InMemoryEntitlementCatalog.from_dict(DOCUMENT)

    plan = await catalog.get_plan("team")
    assert plan is not None
    assert plan.interval is BillingInterval.YEAR
    seats = plan.feature("seats")
    assert seats is not None
    assert seats.overage_rate == 500
    assert plan.feature("storage") is None
    assert [p.id for p in catalog.plans] == ["team", "legacy"]


async def test_from_json_file(tmp_path: Path) -> None:
    path = tmp_path / "plans.json"
    path.write_text(json.dumps(DOCUMENT))
    catalog = InMemoryEntitlementCatalog.from_json_file(path)
    legacy = await catalog.get_plan("legacy")
    assert legacy is not None
    assert legacy.active is False


@pytest.mark.parametrize(
    "document",
    [{}, {"plans": "team"}, {"plans": [{"id": "x", "base_price": -1}]}, ["not", "a", "dict"]],
)
def test_from_dict_rejects_bad_documents(document: object) -> None:
    with pytest.raises(ConfigurationError) as exc_info:
        InMemoryEntitlementCatalog.from_dict(document)  # type: ignore[arg-type]
    assert exc_info.value.code == "invalid_catalog"


def test_from_json_file_missing(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        InMemoryEntitlementCatalog.from_json_file(tmp_path / "nope.json")


async def test_get_plan_returns_copy() -> None:
    catalog = InMemoryEntitlementCatalog(
        [Plan(id="pro", base_price=1000, features=[FeatureEntitlement(id="X", included_units=1)])]
    )
    plan = await catalog.get_plan("pro")
    assert plan is not None
    plan.features.clear()

    again = await catalog.get_plan("pro")
    assert again is not None
    assert len(again.features) == 1


async def test_remove_plan() -> None:
    catalog = InMemoryEntitlementCatalog([Plan(id="pro", base_price=1000)])
    assert catalog.remove_plan("pro") is True
    assert catalog.remove_plan("pro") is False
    assert await catalog.get_plan("pro") is None
    assert isinstance(catalog, EntitlementCatalog)


# ---------------------------------------------------------------------------
# Tax rates
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("rate", "jurisdiction", "expected"),
    [
        (TaxRate(name="VAT", percentage=20), "GB", True),
        (TaxRate(name="CA", percentage=7.25, jurisdiction="US-CA"), "US-CA", True),
        (TaxRate(name="CA", percentage=7.25, jurisdiction="US-CA"), "US-NY", False),
        (TaxRate(name="Old", percentage=5, active=False), "GB", False),
    ],
)
def test_tax_rate_applies_to(rate: TaxRate, jurisdiction: str, expected: bool) -> None:
    assert rate.applies_to(jurisdiction) is expected


async def test_static_tax_rate_provider() -> None:
    provider = StaticTaxRateProvider({"US-CA": [TaxRate(name="CA", percentage=7.25)]})
    provider.set_rates("US-NY", [TaxRate(name="NY", percentage=4)])

    assert [r.name for r in await provider.lookup_rates("US-CA")] == ["CA"]
    assert [r.percentage for r in await provider.lookup_rates("US-NY")] == [4]
    assert await provider.lookup_rates("DE") == []
    assert isinstance(provider, TaxRateProvider)
