"""Pydantic v2 models for the Build Factory.

Defines the wizard input (``BuildConfig`` and its parts), the results handed
back to the calling layer, and the persisted ``GeneratedBuild`` and
``Tenant`` records.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class Product(str, Enum):
    """Products a customer can select in the wizard."""
    WEBSITE = "website"
    CMS = "cms"
    CRM = "crm"


class TenantStatus(str, Enum):
    """Deployment lifecycle of a tenant."""
    GENERATED = "generated"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"


class StorageBackendKind(str, Enum):
    """Where a build archive lives."""
    LOCAL = "local"
    S3 = "s3"


class ServiceRole(str, Enum):
    """Role of a remote platform resource owned by a tenant."""
    BACKEND = "backend"
    FRONTEND = "frontend"
    SITE = "site"
    DATABASE = "database"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Wizard input
# ---------------------------------------------------------------------------

_HEX_COLOR = r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6})$"


class CompanyInfo(BaseModel):
    """Company metadata collected by the wizard."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Display name of the company")
    legal_name: str = Field(default="")
    email: str = Field(default="")
    phone: str = Field(default="")
    address: str = Field(default="")
    city: str = Field(default="")
    state: str = Field(default="")
    state_full: str = Field(default="")
    zip: str = Field(default="")
    domain: str = Field(default="")
    site_url: str = Field(default="")
    frontend_url: str = Field(default="")
    backend_url: str = Field(default="")
    database_url: str = Field(default="")
    industry: str = Field(default="")
    description: str = Field(default="")
    meta_description: str = Field(default="")
    hero_tagline: str = Field(default="")
    owner_name: str = Field(default="")
    admin_email: str = Field(default="")
    service_region: str = Field(default="")
    nearby_cities: list[str] = Field(default_factory=list)
    locale: str = Field(default="en-US")
    default_password: str = Field(default="", description="Fixed admin password; generated when empty")

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Company name is required")
        return value.strip()


class Branding(BaseModel):
    """Colours and embedded images (``data:`` URLs)."""
    model_config = ConfigDict(frozen=True)

    primary_color: str = Field(default="#f97316", pattern=_HEX_COLOR)
    secondary_color: str = Field(default="#1e3a5f", pattern=_HEX_COLOR)
    accent_color: str | None = Field(default=None, pattern=_HEX_COLOR)
    logo: str | None = Field(default=None, description="Logo as a data URL")
    favicon: str | None = Field(default=None, description="Favicon as a data URL")
    hero_image: str | None = Field(default=None, description="Hero image as a data URL")


class CustomService(BaseModel):
    """A service the customer added that is not in the template catalogue."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    description: str = Field(default="")
    icon: str = Field(default="")


class ContentOverrides(BaseModel):
    """Free-text content merged into the product's data files."""
    model_config = ConfigDict(frozen=True)

    about_text: str | None = None
    cta_text: str | None = None
    hero_headline: str | None = None
    service_descriptions: dict[str, str] = Field(default_factory=dict)
    selected_services: list[str] | None = Field(
        default=None, description="Service IDs to keep, in display order"
    )
    custom_services: list[CustomService] = Field(default_factory=list)

    def is_empty(self) -> bool:
        """Return ``True`` when there is nothing to merge."""
        return (
            self.about_text is None
            and self.cta_text is None
            and self.hero_headline is None
            and not self.service_descriptions
            and self.selected_services is None
            and not self.custom_services
        )


class IntegrationCredentials(BaseModel):
    """Optional third-party keys baked into generated env files."""
    model_config = ConfigDict(frozen=True)

    stripe_publishable_key: str = Field(default="")
    stripe_secret_key: str = Field(default="")
    twilio_account_sid: str = Field(default="")
    twilio_auth_token: str = Field(default="")
    twilio_phone_number: str = Field(default="")
    google_maps_api_key: str = Field(default="")


class BillingInfo(BaseModel):
    """Billing linkage recorded on the tenant; never acted on here."""
    model_config = ConfigDict(frozen=True)

    plan_id: str | None = None
    billing_type: str | None = None
    monthly_amount: float | None = None
    one_time_amount: float | None = None


class BuildConfig(BaseModel):
    """Everything the wizard collected for one build.

    Immutable once a build starts; validated before any workspace exists.
    """
    model_config = ConfigDict(frozen=True)

    products: list[Product] = Field(..., min_length=1)
    company: CompanyInfo
    branding: Branding = Field(default_factory=Branding)
    features: dict[Product, list[str]] = Field(default_factory=dict)
    content: ContentOverrides = Field(default_factory=ContentOverrides)
    integrations: IntegrationCredentials = Field(default_factory=IntegrationCredentials)
    billing: BillingInfo | None = None

    @field_validator("products")
    @classmethod
    def _dedupe_products(cls, value: list[Product]) -> list[Product]:
        seen: list[Product] = []
        for product in value:
            if product not in seen:
                seen.append(product)
        return seen

    def has(self, product: Product) -> bool:
        """Return ``True`` if *product* was selected."""
        return product in self.products

    def features_for(self, product: Product) -> list[str]:
        """Enabled feature IDs for *product* (empty when none were chosen)."""
        return list(self.features.get(product, []))


# ---------------------------------------------------------------------------
# Results handed back to the calling layer
# ---------------------------------------------------------------------------

class BuildResult(BaseModel):
    """Outcome of a successful generation."""
    build_id: str
    archive_filename: str
    product_slug: str
    storage_handle: str
    storage_backend: StorageBackendKind
    generated_default_password: str
    tenant_id: str | None = None


class ServiceHealth(BaseModel):
    """Latest known state of one remote service."""
    service_id: str
    status: str = Field(default="unknown")
    finished_at: str | None = None
    commit: str | None = None
    error: str | None = None


class DeployStatus(BaseModel):
    """Aggregated deployment status for a tenant."""
    status: str
    services: dict[str, ServiceHealth] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------

class GeneratedBuild(BaseModel):
    """A successfully archived build."""
    build_id: str
    tenant_id: str
    company_id: str
    products: list[Product]
    features: dict[Product, list[str]] = Field(default_factory=dict)
    archive_filename: str
    storage_handle: str
    storage_backend: StorageBackendKind
    created_at: datetime = Field(default_factory=_utcnow)


class Tenant(BaseModel):
    """A contractor account that owns builds and at most one deployment."""
    id: str
    company_id: str
    name: str
    slug: str
    status: TenantStatus = Field(default=TenantStatus.GENERATED)
    products: list[Product] = Field(default_factory=list)
    features: dict[Product, list[str]] = Field(default_factory=dict)
    config: BuildConfig | None = Field(default=None, description="Wizard config used for the latest build")
    billing: BillingInfo | None = None
    site_url: str | None = None
    api_url: str | None = None
    app_url: str | None = None
    repo_url: str | None = None
    service_ids: dict[ServiceRole, str] = Field(default_factory=dict)
    last_errors: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def touch(self) -> None:
        self.updated_at = _utcnow()

    def summary(self) -> dict[str, Any]:
        """Short dict used by the CLI summary table."""
        return {
            "Tenant": self.id,
            "Name": self.name,
            "Status": self.status.value,
            "Site": self.site_url or "-",
            "App": self.app_url or "-",
            "API": self.api_url or "-",
        }
