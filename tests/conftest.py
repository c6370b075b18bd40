"""Shared pytest fixtures for the Build Factory test suite.

Provides reusable fixtures for:
- A fixture template store with website, cms and crm products
- Config instances rooted in a temporary directory
- Sample wizard configurations
- Mock HTTP transports for the GitHub and Render clients
"""

from __future__ import annotations

import base64
import json
import textwrap
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest

from buildfactory.config import Config, DeployConfig
from buildfactory.generator.store import FileSystemTemplateStore
from buildfactory.models import BuildConfig

# 1x1 transparent PNG
PNG_BYTES = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)
PNG_DATA_URL = "data:image/png;base64," + base64.b64encode(PNG_BYTES).decode("ascii")


# ---------------------------------------------------------------------------
# Template tree
# ---------------------------------------------------------------------------


def _write(root: Path, rel: str, content: str | bytes) -> None:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        path.write_bytes(content)
    else:
        path.write_text(textwrap.dedent(content).lstrip("\n"), encoding="utf-8")


def _json(data: Any) -> str:
    return json.dumps(data, indent=2) + "\n"


WEBSITE_MANIFEST = {
    "version": "2",
    "layout": {
        "routes_dir": "routes",
        "services_dir": "services",
        "views_dir": "views",
        "data_dir": "data",
        "settings_file": "data/settings.json",
        "nav_config_file": "data/nav-config.json",
    },
    "core": {"backend": {"routes": ["pages.js"]}},
    "features": {
        "blog": {"frontend": {"views": ["blog.ejs"], "data": ["blog.json"]}},
        "gallery": {"frontend": {"views": ["gallery.ejs"], "data": ["gallery.json"]}},
        "contact_form": {"backend": {"routes": ["contact.js"]}, "frontend": {"views": ["contact.ejs"]}},
        "analytics": {},
    },
    "navigation": {"blog": "blog", "gallery": "gallery", "contact_form": "contact"},
    "settings_resets": {"analytics": {"analytics": {"googleId": "", "facebookPixel": ""}}},
}

CRM_MANIFEST = {
    "version": "3",
    "core": {
        "backend": {"routes": ["contacts.js"], "services": ["audit.js"]},
        "frontend": {"views": ["Dashboard.jsx"]},
    },
    "features": {
        "invoices": {
            "backend": {"routes": ["invoices.js"], "services": ["pdf.js"]},
            "frontend": {"views": ["InvoicesPage.jsx"], "data": ["invoices.json"]},
        },
        "time_tracking": {
            "backend": {"routes": ["time-tracking.js"]},
            "frontend": {"views": ["TimePage.jsx"], "data": ["timesheets.json"]},
        },
    },
    "composition_root": {
        "path": "backend/src/index.js",
        "modules": [
            {"file": "contacts.js"},
            {"file": "invoices.js"},
            {"file": "time-tracking.js"},
        ],
    },
}


def build_template_tree(root: Path) -> Path:
    """Write website, cms and crm fixture templates under *root*."""
    web = root / "website"
    _write(web, "feature-manifest.json", _json(WEBSITE_MANIFEST))
    _write(web, "server.js", "// {{COMPANY_NAME}} site server\n")
    _write(web, "routes/pages.js", "module.exports = '{{COMPANY_SLUG}}';\n")
    _write(web, "routes/auth.js", "// auth\n")
    _write(web, "routes/contact.js", "// contact form handler\n")
    _write(web, "views/home.ejs", "<h1>{{COMPANY_NAME}}</h1>\n<p>{{HERO_TAGLINE}}</p>\n")
    _write(web, "views/blog.ejs", "<h2>Blog</h2>\n")
    _write(web, "views/gallery.ejs", "<h2>Gallery</h2>\n")
    _write(web, "views/contact.ejs", "<h2>Contact {{COMPANY_PHONE}}</h2>\n")
    _write(web, "data/settings.json", _json({
        "siteName": "{{COMPANY_NAME}}",
        "phone": "{{COMPANY_PHONE}}",
        "analytics": {"googleId": "G-TEMPLATE", "facebookPixel": "PX-TEMPLATE"},
    }))
    _write(web, "data/services.json", _json([
        {"id": "roofing", "name": "Roofing", "description": "Roof work"},
        {"id": "siding", "name": "Siding", "description": "Siding work"},
        {"id": "gutters", "name": "Gutters", "description": "Gutter work"},
    ]))
    _write(web, "data/blog.json", _json([{"title": "First post"}]))
    _write(web, "data/gallery.json", _json({"images": ["a.jpg", "b.jpg"]}))
    _write(web, "data/nav-config.json", _json({"items": [
        {"id": "home", "label": "Home", "visible": True},
        {"id": "blog", "label": "Blog", "visible": True},
        {"id": "gallery", "label": "Gallery", "visible": True},
        {"id": "contact", "label": "Contact", "visible": True},
    ]}))
    _write(web, "public/css/style.css", """
        :root {
          --color-primary: #000000;
          --color-primary-light: #111111;
          --color-secondary: #222222;
          --color-accent: #333333;
          --color-unrelated: #444444;
        }
        body { color: var(--color-primary); }
    """)
    _write(web, "public/img/pixel.png", PNG_BYTES + b"{{COMPANY_NAME}}")
    _write(web, "render.yaml", "services:\n  - type: web\n    name: {{COMPANY_SLUG}}-site\n")
    _write(web, "node_modules/left-pad/index.js", "module.exports = 1;\n")
    _write(web, ".DS_Store", b"\x00\x01")

    cms = root / "cms"
    _write(cms, "package.json", _json({"name": "{{COMPANY_SLUG}}-cms", "private": True}))
    _write(cms, "src/App.jsx", "export const title = '{{COMPANY_NAME}} Admin';\n")
    _write(cms, "public/settings.json", _json({"title": "{{COMPANY_NAME}}"}))

    crm = root / "crm"
    _write(crm, "feature-manifest.json", _json(CRM_MANIFEST))
    for name in ("auth.js", "factory.js", "contacts.js", "invoices.js", "time-tracking.js", "legacy.js"):
        _write(crm, f"backend/src/routes/{name}", f"// {name}\n")
    _write(crm, "backend/src/services/audit.js", "// audit\n")
    _write(crm, "backend/src/services/pdf.js", "// pdf\n")
    _write(crm, "backend/src/services/email/sender.js", "// nested service\n")
    _write(crm, "backend/src/index.js", """
        import express from 'express';
        import authRoutes from './routes/auth.js';
        /* factory:imports */

        const app = express();
        app.use('/api/auth', authRoutes);
          /* factory:mounts */

        export default app;
    """)
    _write(crm, "backend/prisma/seed.js.template", """
        const company = '{{COMPANY_NAME}}';
        const features = {{ENABLED_FEATURES_JSON}};
        console.log('Seeding {{ENABLED_FEATURES_COUNT}}');
    """)
    _write(crm, "backend/.env.template", "JWT_SECRET={{JWT_SECRET}}\nDATABASE_URL={{DATABASE_URL}}\n")
    _write(crm, "backend/.env.example", "ADMIN_EMAIL={{ADMIN_EMAIL}}\n")
    _write(crm, "frontend/src/pages/Dashboard.jsx", "export default () => '{{COMPANY_NAME}}';\n")
    _write(crm, "frontend/src/pages/InvoicesPage.jsx", "export default () => 'invoices';\n")
    _write(crm, "frontend/src/pages/TimePage.jsx", "export default () => 'time';\n")
    _write(crm, "frontend/src/data/invoices.json", _json([{"id": 1}]))
    _write(crm, "frontend/src/data/timesheets.json", _json({"weeks": []}))
    _write(crm, "frontend/public/settings.json", _json({"companyName": "{{COMPANY_NAME}}"}))
    _write(crm, "render.yaml.template", """
        services:
          - type: web
            name: {{COMPANY_SLUG}}-api
        databases:
          - name: {{COMPANY_SLUG}}-db
    """)
    return root


# ---------------------------------------------------------------------------
# Paths, config and stores
# ---------------------------------------------------------------------------


@pytest.fixture
def templates_root(tmp_path: Path) -> Path:
    """Fixture template tree with website, cms and crm products."""
    return build_template_tree(tmp_path / "templates")


@pytest.fixture
def template_store(templates_root: Path) -> FileSystemTemplateStore:
    return FileSystemTemplateStore(templates_root)


@pytest.fixture
def deploy_config() -> DeployConfig:
    return DeployConfig(
        render_api_url="https://render.test/v1",
        render_api_key="rnd_test",
        render_owner_id="own-1",
        github_api_url="https://api.github.test",
        github_token="ghp_test",
        github_org="tenants",
        poll_interval=0.01,
        poll_timeout=5.0,
    )


@pytest.fixture
def factory_config(tmp_path: Path, templates_root: Path, deploy_config: DeployConfig) -> Config:
    """Config rooted in a temporary directory with local storage."""
    config = Config(
        templates_dir=templates_root,
        output_dir=tmp_path / "generated",
        data_dir=tmp_path / "data",
        deploy=deploy_config,
    )
    config.ensure_directories()
    return config


# ---------------------------------------------------------------------------
# Wizard input
# ---------------------------------------------------------------------------


@pytest.fixture
def png_bytes() -> bytes:
    return PNG_BYTES


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Raw wizard payload selecting website + cms + crm."""
    return {
        "products": ["website", "cms", "crm"],
        "company": {
            "name": "Acme Roofing & Sons",
            "email": "hello@acme.test",
            "phone": "(715) 555-0199",
            "city": "Eau Claire",
            "state": "WI",
            "owner_name": "Jane Q Doe",
            "industry": "Roofing",
            "nearby_cities": ["Altoona", "Chippewa Falls"],
        },
        "branding": {
            "primary_color": "#f97316",
            "secondary_color": "#1e3a5f",
            "logo": PNG_DATA_URL,
        },
        "features": {
            "website": ["blog"],
            "crm": ["invoices"],
        },
        "content": {
            "about_text": "Family owned since 1985.",
            "selected_services": ["siding", "roofing"],
            "service_descriptions": {"roofing": "Shingles and metal roofs"},
            "custom_services": [{"name": "Snow Removal", "description": "Roof snow clearing"}],
        },
    }


@pytest.fixture
def sample_build_config(sample_config_dict: dict[str, Any]) -> BuildConfig:
    return BuildConfig.model_validate(sample_config_dict)


# ---------------------------------------------------------------------------
# HTTP mocking
# ---------------------------------------------------------------------------


class RecordingTransport(httpx.MockTransport):
    """``MockTransport`` that records every request it answers."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.requests: list[httpx.Request] = []

        def _record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(_record)

    def calls(self, method: str | None = None, path_prefix: str = "") -> list[httpx.Request]:
        return [
            r for r in self.requests
            if (method is None or r.method == method) and r.url.path.startswith(path_prefix)
        ]


@pytest.fixture
def make_transport() -> Callable[[Callable[[httpx.Request], httpx.Response]], RecordingTransport]:
    return RecordingTransport
