"""Read-only access to the versioned product template trees.

The generator never looks templates up through globals; it is handed a
``TemplateStore`` so tests and alternative deployments can substitute their
own fixture trees and manifests.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from buildfactory.errors import TemplateError
from buildfactory.generator.manifest import MANIFEST_FILENAME, FeatureManifest
from buildfactory.models import Product
from buildfactory.utils import load_json


class TemplateStore(ABC):
    """Read-only repository of product templates and their manifests."""

    @abstractmethod
    def product_dir(self, product: Product) -> Path:
        """Return the template root for *product*.

        Raises:
            TemplateError: If no template exists for the product.
        """

    @abstractmethod
    def manifest(self, product: Product) -> FeatureManifest | None:
        """Return the product's feature manifest, or ``None`` if it ships none."""

    @abstractmethod
    def list_products(self) -> list[str]:
        """Names of every template directory in the store."""


class FileSystemTemplateStore(TemplateStore):
    """Templates laid out as ``<root>/<product>/`` on local disk.

    Manifests are parsed once and cached; the store is safe to share between
    concurrent builds because nothing in it is ever written.
    """

    def __init__(
        self,
        root: str | Path,
        manifests: dict[Product, FeatureManifest | None] | None = None,
    ) -> None:
        self.root = Path(root)
        self._manifests: dict[Product, FeatureManifest | None] = dict(manifests or {})

    def product_dir(self, product: Product) -> Path:
        path = self.root / product.value
        if not path.is_dir():
            raise TemplateError(
                f"Template not found: {product.value} (looked in {path})",
                product=product.value,
            )
        return path

    def manifest(self, product: Product) -> FeatureManifest | None:
        if product in self._manifests:
            return self._manifests[product]

        path = self.root / product.value / MANIFEST_FILENAME
        manifest: FeatureManifest | None = None
        if path.is_file():
            try:
                manifest = FeatureManifest.load(path)
            except (json.JSONDecodeError, ValidationError) as exc:
                raise TemplateError(
                    f"Invalid feature manifest for {product.value}: {exc}",
                    product=product.value,
                ) from exc
        self._manifests[product] = manifest
        return manifest

    def list_products(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_dir())


def load_template_json(path: Path) -> Any:
    """Parse a JSON document inside a rendered template tree.

    Raises:
        TemplateError: If the document is not valid JSON.
    """
    try:
        return load_json(path)
    except json.JSONDecodeError as exc:
        raise TemplateError(f"Invalid JSON in {path.name}: {exc}") from exc
