"""Unit tests for the Pydantic models (buildfactory.models).

Tests cover:
- BuildConfig validation (products, company name, colours)
- BuildConfig.has / features_for and product de-duplication
- ContentOverrides.is_empty
- Tenant defaults, touch() and summary()
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from buildfactory.models import (
    BuildConfig,
    ContentOverrides,
    CustomService,
    Product,
    Tenant,
    TenantStatus,
)

pytestmark = pytest.mark.unit


class TestBuildConfig:
    def test_parses_wizard_payload(self, sample_config_dict):
        cfg = BuildConfig.model_validate(sample_config_dict)
        assert cfg.products == [Product.WEBSITE, Product.CMS, Product.CRM]
        assert cfg.company.name == "Acme Roofing & Sons"
        assert cfg.features_for(Product.CRM) == ["invoices"]
        assert cfg.content.custom_services[0].name == "Snow Removal"

    def test_requires_a_product(self):
        with pytest.raises(ValidationError):
            BuildConfig.model_validate({"products": [], "company": {"name": "Acme"}})

    def test_rejects_unknown_product(self):
        with pytest.raises(ValidationError):
            BuildConfig.model_validate({"products": ["erp"], "company": {"name": "Acme"}})

    def test_rejects_blank_company_name(self):
        with pytest.raises(ValidationError):
            BuildConfig.model_validate({"products": ["website"], "company": {"name": "   "}})

    def test_rejects_bad_colour(self):
        with pytest.raises(ValidationError):
            BuildConfig.model_validate({
                "products": ["website"],
                "company": {"name": "Acme"},
                "branding": {"primary_color": "orange"},
            })

    def test_deduplicates_products(self):
        cfg = BuildConfig.model_validate({
            "products": ["crm", "website", "crm"],
            "company": {"name": "Acme"},
        })
        assert cfg.products == [Product.CRM, Product.WEBSITE]

    def test_has_and_features_for_default(self):
        cfg = BuildConfig.model_validate({"products": ["website"], "company": {"name": "Acme"}})
        assert cfg.has(Product.WEBSITE)
        assert not cfg.has(Product.CRM)
        assert cfg.features_for(Product.WEBSITE) == []

    def test_is_frozen(self, sample_build_config):
        with pytest.raises(ValidationError):
            sample_build_config.products = [Product.CRM]


class TestContentOverrides:
    def test_empty_by_default(self):
        assert ContentOverrides().is_empty()

    def test_any_field_makes_it_non_empty(self):
        assert not ContentOverrides(about_text="").is_empty()
        assert not ContentOverrides(selected_services=[]).is_empty()
        assert not ContentOverrides(custom_services=[CustomService(name="Decks")]).is_empty()


class TestTenant:
    def test_defaults(self):
        tenant = Tenant(id="t1", company_id="c1", name="Acme", slug="acme")
        assert tenant.status == TenantStatus.GENERATED
        assert tenant.service_ids == {}
        assert tenant.last_errors == []

    def test_touch_moves_updated_at(self):
        tenant = Tenant(id="t1", company_id="c1", name="Acme", slug="acme")
        before = tenant.updated_at
        tenant.touch()
        assert tenant.updated_at >= before

    def test_summary(self):
        tenant = Tenant(id="t1", company_id="c1", name="Acme", slug="acme", site_url="https://acme.test")
        summary = tenant.summary()
        assert summary["Status"] == "generated"
        assert summary["Site"] == "https://acme.test"
        assert summary["App"] == "-"
