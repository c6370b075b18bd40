"""Asset & content injection.

Three independent steps run against one rendered product:

* branding images decoded from ``data:`` URLs into the static-asset
  directory, with the settings record pointed at them;
* stylesheet colour custom properties rewritten from the brand palette;
* free-text content overrides merged into the settings and services data.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import unquote_to_bytes

from buildfactory.generator.store import load_template_json
from buildfactory.models import Branding, ContentOverrides, Product
from buildfactory.utils import iter_files, slugify, write_json

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Per-product layout
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AssetLayout:
    """Where a product keeps its static assets and data records."""

    assets_dir: str
    url_prefix: str = "/uploads"
    settings_files: tuple[str, ...] = ("data/settings.json", "settings.json")
    services_file: str | None = None


ASSET_LAYOUTS: dict[Product, AssetLayout] = {
    Product.WEBSITE: AssetLayout(
        assets_dir="uploads",
        services_file="data/services.json",
    ),
    Product.CMS: AssetLayout(
        assets_dir="public/uploads",
        settings_files=("public/settings.json", "settings.json"),
    ),
    Product.CRM: AssetLayout(
        assets_dir="frontend/public/uploads",
        settings_files=("frontend/public/data/settings.json", "frontend/public/settings.json"),
    ),
}

# (Branding attribute, output stem, settings key, fallback extension)
_IMAGES = (
    ("logo", "logo", "logo", "png"),
    ("favicon", "favicon", "favicon", "ico"),
    ("hero_image", "hero", "heroImage", "jpg"),
)

_EXTENSION_ALIASES = {
    "jpeg": "jpg",
    "svg+xml": "svg",
    "x-icon": "ico",
    "vnd.microsoft.icon": "ico",
}


# ---------------------------------------------------------------------------
# Data URLs
# ---------------------------------------------------------------------------


def extension_from_data_url(data_url: str) -> str | None:
    """Infer a file extension from an ``image/*`` data URL media type."""
    match = re.match(r"data:image/([\w.+-]+)", data_url or "")
    if not match:
        return None
    subtype = match.group(1).lower()
    return _EXTENSION_ALIASES.get(subtype, subtype)


def decode_data_url(data_url: str) -> bytes | None:
    """Return the payload of a ``data:`` URL, or ``None`` if it is malformed."""
    if not data_url or not data_url.startswith("data:") or "," not in data_url:
        return None
    header, payload = data_url.split(",", 1)
    if header.endswith(";base64"):
        try:
            return base64.b64decode(payload, validate=False)
        except (binascii.Error, ValueError):
            return None
    return unquote_to_bytes(payload)


# ---------------------------------------------------------------------------
# Colours
# ---------------------------------------------------------------------------


def lighten_hex(color: str, percent: float) -> str:
    """Shift each RGB channel by ``round(255 * percent / 100)``, clamped.

    Negative *percent* darkens.  Three-digit colours are expanded first.

    Examples::

        lighten_hex("#f97316", 20) -> "#ffa649"
        lighten_hex("#000", -10)   -> "#000000"
    """
    value = color.lstrip("#")
    if len(value) == 3:
        value = "".join(ch * 2 for ch in value)
    num = int(value[:6], 16)
    delta = round(255 * percent / 100)
    channels = ((num >> 16) & 0xFF, (num >> 8) & 0xFF, num & 0xFF)
    r, g, b = (min(255, max(0, ch + delta)) for ch in channels)
    return f"#{r:02x}{g:02x}{b:02x}"


def color_palette(branding: Branding) -> dict[str, str]:
    """Map each supported CSS custom property to its colour."""
    primary = branding.primary_color
    secondary = branding.secondary_color
    accent = branding.accent_color or primary
    return {
        "--color-primary": primary,
        "--color-primary-light": lighten_hex(primary, 20),
        "--color-primary-dark": lighten_hex(primary, -20),
        "--color-secondary": secondary,
        "--color-secondary-light": lighten_hex(secondary, 20),
        "--color-accent": accent,
        "--color-accent-light": lighten_hex(accent, 20),
    }


_CSS_VAR = re.compile(r"(--color-[a-z0-9-]+)(\s*:\s*)(#[0-9a-fA-F]{3,8})\b")


def inject_css_colors(content: str, palette: dict[str, str]) -> str:
    """Rewrite colour declarations whose property name is in *palette*."""

    def _swap(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in palette:
            return match.group(0)
        return f"{name}{match.group(2)}{palette[name]}"

    return _CSS_VAR.sub(_swap, content)


# ---------------------------------------------------------------------------
# Injector
# ---------------------------------------------------------------------------


@dataclass
class InjectionReport:
    assets_written: list[str] = field(default_factory=list)
    stylesheets_updated: list[str] = field(default_factory=list)
    records_updated: list[str] = field(default_factory=list)


class AssetInjector:
    """Writes branding and content into one rendered product tree."""

    def __init__(self, layouts: dict[Product, AssetLayout] | None = None) -> None:
        self.layouts = layouts or ASSET_LAYOUTS

    def inject(
        self,
        product: Product,
        product_dir: Path,
        branding: Branding,
        content: ContentOverrides,
        *,
        skip: list[str] | None = None,
        images: bool = True,
        colors: bool = True,
        merge: bool = True,
    ) -> InjectionReport:
        """Run the enabled injection steps.

        Args:
            skip: Paths (relative to *product_dir*) neutralised by the
                resolver; content is never merged back into them.
        """
        layout = self.layouts[product]
        report = InjectionReport()
        if images:
            report.assets_written = self.write_branding_assets(product_dir, layout, branding)
        if colors:
            report.stylesheets_updated = self.apply_palette(product_dir, branding)
        if merge and not content.is_empty():
            report.records_updated = self.merge_content(product_dir, layout, content, set(skip or []))
        return report

    # -- (a) images --------------------------------------------------------

    def write_branding_assets(self, product_dir: Path, layout: AssetLayout, branding: Branding) -> list[str]:
        written: list[str] = []
        updates: dict[str, str] = {}
        for attr, stem, key, fallback in _IMAGES:
            data_url = getattr(branding, attr)
            if not data_url:
                continue
            payload = decode_data_url(data_url)
            if payload is None:
                logger.warning("Ignoring malformed %s data URL", attr)
                continue
            filename = f"{stem}.{extension_from_data_url(data_url) or fallback}"
            target = product_dir / layout.assets_dir / filename
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(payload)
            written.append(f"{layout.assets_dir}/{filename}")
            updates[key] = f"{layout.url_prefix}/{filename}"

        if updates:
            settings_path = self._settings_path(product_dir, layout)
            if settings_path is not None:
                settings = load_template_json(settings_path)
                if isinstance(settings, dict):
                    settings.update(updates)
                    write_json(settings, settings_path)
        return written

    # -- (b) stylesheets ---------------------------------------------------

    @staticmethod
    def apply_palette(product_dir: Path, branding: Branding) -> list[str]:
        palette = color_palette(branding)
        updated: list[str] = []
        for css in iter_files(product_dir, lambda p: p.suffix == ".css"):
            original = css.read_text(encoding="utf-8")
            rewritten = inject_css_colors(original, palette)
            if rewritten != original:
                css.write_text(rewritten, encoding="utf-8")
                updated.append(str(css.relative_to(product_dir)))
        return updated

    # -- (c) content -------------------------------------------------------

    def merge_content(
        self,
        product_dir: Path,
        layout: AssetLayout,
        content: ContentOverrides,
        skip: set[str],
    ) -> list[str]:
        updated: list[str] = []

        settings_path = self._settings_path(product_dir, layout)
        if settings_path is not None and _rel(settings_path, product_dir) not in skip:
            settings = load_template_json(settings_path)
            if isinstance(settings, dict):
                fields = {
                    "aboutText": content.about_text,
                    "ctaText": content.cta_text,
                    "heroHeadline": content.hero_headline,
                }
                changes = {k: v for k, v in fields.items() if v is not None}
                if changes:
                    settings.update(changes)
                    write_json(settings, settings_path)
                    updated.append(_rel(settings_path, product_dir))

        if layout.services_file and layout.services_file not in skip:
            services_path = product_dir / layout.services_file
            if services_path.is_file() and self._merge_services(services_path, content):
                updated.append(layout.services_file)

        return updated

    @staticmethod
    def _merge_services(path: Path, content: ContentOverrides) -> bool:
        raw = load_template_json(path)
        wrapped = isinstance(raw, dict)
        services: list[dict[str, Any]] = raw.get("services", []) if wrapped else raw
        if not isinstance(services, list):
            return False

        if content.selected_services is not None:
            by_id = {s.get("id"): s for s in services if isinstance(s, dict)}
            services = [by_id[sid] for sid in content.selected_services if sid in by_id]

        for service in services:
            override = content.service_descriptions.get(service.get("id", ""))
            if override:
                service["description"] = override

        existing = {s.get("id") for s in services}
        for custom in content.custom_services:
            service_id = slugify(custom.name, default="service")
            if service_id in existing:
                continue
            services.append({
                "id": service_id,
                "name": custom.name,
                "description": custom.description,
                "icon": custom.icon,
                "custom": True,
            })
            existing.add(service_id)

        if wrapped:
            raw["services"] = services
            write_json(raw, path)
        else:
            write_json(services, path)
        return True

    @staticmethod
    def _settings_path(product_dir: Path, layout: AssetLayout) -> Path | None:
        for rel in layout.settings_files:
            candidate = product_dir / rel
            if candidate.is_file():
                return candidate
        return None


def _rel(path: Path, root: Path) -> str:
    return path.relative_to(root).as_posix()
