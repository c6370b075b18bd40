"""Jinja2 rendering of the archive's root setup guide and setup script.

Both ``README.md`` and ``deploy.sh`` are rendered from the same
``SetupPlan`` so the script always performs exactly the steps the guide
describes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from buildfactory.models import BuildConfig, Product

_DEFAULT_TEMPLATE_DIR = Path(__file__).parent / "templates"


# ---------------------------------------------------------------------------
# Setup plan
# ---------------------------------------------------------------------------


@dataclass
class SetupStep:
    label: str
    command: str


@dataclass
class ProductSetup:
    """How to bring one product up from the unpacked archive."""

    product: Product
    title: str
    path: str
    summary: str
    requirements: str = ""
    steps: list[SetupStep] = field(default_factory=list)
    features: list[str] = field(default_factory=list)


def setup_plan(config: BuildConfig, placement: dict[Product, str], slug: str) -> list[ProductSetup]:
    """Describe the setup of each product at its archive location."""
    plan: list[ProductSetup] = []

    if Product.WEBSITE in placement:
        plan.append(ProductSetup(
            product=Product.WEBSITE,
            title="Website",
            path=placement[Product.WEBSITE],
            summary="Server-rendered site with an Express backend and JSON data storage.",
            requirements="Node.js 18+",
            steps=[SetupStep("Installing website dependencies", "npm install")],
            features=config.features_for(Product.WEBSITE),
        ))

    if Product.CMS in placement:
        nested = Product.WEBSITE in placement
        plan.append(ProductSetup(
            product=Product.CMS,
            title="CMS Admin Panel" if nested else "CMS",
            path=placement[Product.CMS],
            summary=(
                "React admin panel for managing site content, served at /admin on the website."
                if nested else "Standalone React admin panel."
            ),
            requirements="Node.js 18+",
            steps=[
                SetupStep("Installing CMS dependencies", "npm install"),
                SetupStep("Building CMS admin panel", "npm run build"),
            ],
            features=config.features_for(Product.CMS),
        ))

    if Product.CRM in placement:
        root = placement[Product.CRM]
        plan.append(ProductSetup(
            product=Product.CRM,
            title="CRM API",
            path=f"{root}/backend",
            summary=(
                "Business-management backend with PostgreSQL. "
                f"Create the database first (createdb {slug.replace('-', '_')}_crm) "
                "and set DATABASE_URL in .env."
            ),
            requirements="Node.js 18+, PostgreSQL 14+",
            steps=[
                SetupStep("Installing CRM backend", "npm install"),
                SetupStep("Running database migrations", "npx prisma migrate deploy"),
                SetupStep("Seeding database", "npx prisma db seed"),
            ],
            features=config.features_for(Product.CRM),
        ))
        plan.append(ProductSetup(
            product=Product.CRM,
            title="CRM App",
            path=f"{root}/frontend",
            summary="React frontend for the CRM.",
            requirements="Node.js 18+",
            steps=[
                SetupStep("Installing CRM frontend", "npm install"),
                SetupStep("Building CRM frontend", "npm run build"),
            ],
        ))

    return plan


# ---------------------------------------------------------------------------
# Renderer
# ---------------------------------------------------------------------------


class SetupGuideRenderer:
    """Renders the root ``README.md`` and ``deploy.sh`` templates."""

    def __init__(self, template_dir: str | Path | None = None) -> None:
        if template_dir is None:
            template_dir = _DEFAULT_TEMPLATE_DIR
        self.template_dir = Path(template_dir)
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=select_autoescape([]),
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            undefined=StrictUndefined,
        )

    def render(self, template_path: str, context: dict[str, Any]) -> str:
        template = self.env.get_template(template_path)
        return template.render(**context)

    def context(
        self,
        config: BuildConfig,
        tokens: dict[str, str],
        placement: dict[Product, str],
        generated_on: date | None = None,
    ) -> dict[str, Any]:
        slug = tokens["{{COMPANY_SLUG}}"]
        return {
            "company_name": config.company.name,
            # Shell comment text: one line, no control characters.
            "script_title": " ".join(config.company.name.split()),
            "slug": slug,
            "generated_on": (generated_on or date.today()).isoformat(),
            "admin_email": tokens["{{ADMIN_EMAIL}}"],
            "default_password": tokens["{{DEFAULT_PASSWORD}}"],
            "products": [p.value for p in config.products],
            "plan": setup_plan(config, placement, slug),
        }

    def write(self, workspace_dir: Path, context: dict[str, Any]) -> tuple[Path, Path]:
        """Write ``README.md`` and ``deploy.sh`` into *workspace_dir*."""
        readme = workspace_dir / "README.md"
        script = workspace_dir / "deploy.sh"
        readme.write_text(self.render("README.md.j2", context), encoding="utf-8")
        script.write_text(self.render("deploy.sh.j2", context), encoding="utf-8")
        return readme, script
