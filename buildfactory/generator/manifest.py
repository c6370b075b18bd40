"""Feature manifest model.

Every product template may ship a ``feature-manifest.json`` describing which
backend and frontend files each selectable feature needs.  The manifest also
carries the declarative list of route modules from which the product's
composition root is generated, so no import statement is ever edited by
pattern matching.

Example::

    {
      "version": "3",
      "core": {"backend": {"routes": ["contacts.js"], "services": ["audit.js"]}},
      "features": {
        "invoices": {"backend": {"routes": ["invoices.js"], "services": ["pdf.js"]},
                     "frontend": {"views": ["InvoicesPage.jsx"], "data": ["invoices.json"]}}
      },
      "composition_root": {
        "path": "backend/src/index.js",
        "modules": [{"file": "contacts.js"}, {"file": "invoices.js", "mount": "/api/invoices"}]
      }
    }
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from buildfactory.errors import ResolverError
from buildfactory.utils import camel_case, kebab_case

MANIFEST_FILENAME = "feature-manifest.json"


# ---------------------------------------------------------------------------
# File sets
# ---------------------------------------------------------------------------


class BackendFiles(BaseModel):
    routes: list[str] = Field(default_factory=list)
    services: list[str] = Field(default_factory=list)


class FrontendFiles(BaseModel):
    views: list[str] = Field(default_factory=list)
    data: list[str] = Field(default_factory=list)


class FeatureFiles(BaseModel):
    """Files one feature (or the core) requires."""
    backend: BackendFiles = Field(default_factory=BackendFiles)
    frontend: FrontendFiles = Field(default_factory=FrontendFiles)


class ManifestLayout(BaseModel):
    """Where each kind of file lives, relative to the product root."""
    routes_dir: str = Field(default="backend/src/routes")
    services_dir: str = Field(default="backend/src/services")
    views_dir: str = Field(default="frontend/src/pages")
    data_dir: str = Field(default="frontend/src/data")
    settings_file: str = Field(default="data/settings.json")
    nav_config_file: str = Field(default="data/nav-config.json")


# ---------------------------------------------------------------------------
# Composition root
# ---------------------------------------------------------------------------


class RouteModule(BaseModel):
    """One optional route module registered by the composition root.

    ``symbol`` and ``mount`` default to the filename convention:
    ``time-tracking.js`` -> ``timeTrackingRoutes`` mounted at
    ``/api/time-tracking``.
    """
    file: str
    symbol: str | None = None
    mount: str | None = None

    @property
    def stem(self) -> str:
        return self.file.rsplit(".", 1)[0]

    def resolved_symbol(self) -> str:
        return self.symbol or f"{camel_case(self.stem)}Routes"

    def resolved_mount(self) -> str:
        return self.mount or f"/api/{kebab_case(self.stem)}"


class CompositionRoot(BaseModel):
    """Declarative registration list for the file that mounts all routes.

    The template file contains one line holding ``import_marker`` and one
    holding ``mount_marker``; both are replaced with lines generated from
    ``modules`` for the route files that survive stripping.
    """
    path: str = Field(default="backend/src/index.js")
    import_marker: str = Field(default="/* factory:imports */")
    mount_marker: str = Field(default="/* factory:mounts */")
    import_format: str = Field(default="import {symbol} from './routes/{file}';")
    mount_format: str = Field(default="app.use('{mount}', {symbol});")
    modules: list[RouteModule] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------


@dataclass
class RetainedFiles:
    """Union of the file sets of the core and every enabled feature."""

    routes: set[str] = field(default_factory=set)
    services: set[str] = field(default_factory=set)
    views: set[str] = field(default_factory=set)
    data: set[str] = field(default_factory=set)

    def add(self, files: FeatureFiles) -> None:
        self.routes.update(files.backend.routes)
        self.services.update(files.backend.services)
        self.views.update(files.frontend.views)
        self.data.update(files.frontend.data)


class FeatureManifest(BaseModel):
    """Per-product, versioned map of feature ID to required files."""

    version: str = Field(default="1")
    core: FeatureFiles = Field(default_factory=FeatureFiles)
    features: dict[str, FeatureFiles] = Field(default_factory=dict)
    layout: ManifestLayout = Field(default_factory=ManifestLayout)
    always_keep: list[str] = Field(
        default_factory=lambda: ["auth.js", "factory.js"],
        description="Backend files that survive regardless of feature selection",
    )
    composition_root: CompositionRoot | None = None
    navigation: dict[str, str] = Field(
        default_factory=dict, description="Feature ID -> navigation item ID"
    )
    settings_resets: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="Feature ID -> settings values applied when the feature is disabled",
    )

    @classmethod
    def load(cls, path: str | Path) -> "FeatureManifest":
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls.model_validate(raw)

    def feature_ids(self) -> list[str]:
        return sorted(self.features)

    def unknown_features(self, enabled: list[str]) -> list[str]:
        """Return the enabled IDs the manifest does not declare."""
        return sorted({fid for fid in enabled if fid not in self.features})

    def validate_features(self, enabled: list[str], product: str = "") -> None:
        """Raise ``ResolverError`` if any enabled ID is not in the manifest."""
        unknown = self.unknown_features(enabled)
        if unknown:
            label = f" for {product}" if product else ""
            raise ResolverError(
                f"Unknown feature IDs{label}: {', '.join(unknown)}",
                unknown=unknown,
            )

    def retained(self, enabled: list[str]) -> RetainedFiles:
        """Compute ``core ∪ ⋃ features[id]`` for the enabled IDs."""
        result = RetainedFiles()
        result.add(self.core)
        for fid in enabled:
            files = self.features.get(fid)
            if files is not None:
                result.add(files)
        return result
