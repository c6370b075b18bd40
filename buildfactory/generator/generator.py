"""Package generation orchestrator.

Takes a ``BuildConfig`` (or the raw wizard dict) and produces a stored
archive: every selected product is rendered from its template, stripped to
the enabled features, branded, then assembled and handed to the storage
backend.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from buildfactory.config import Config
from buildfactory.errors import ConfigurationError, TemplateError
from buildfactory.generator.assembler import PackageAssembler
from buildfactory.generator.assets import AssetInjector
from buildfactory.generator.resolver import FeatureResolver
from buildfactory.generator.store import TemplateStore
from buildfactory.generator.tokens import build_token_map, product_tokens, render
from buildfactory.models import BuildConfig, BuildResult, Product
from buildfactory.storage import StorageBackend
from buildfactory.utils import format_duration, generate_password, slugify

logger = logging.getLogger(__name__)

# Render order; the website must exist before the CMS is nested inside it.
PRODUCT_ORDER: tuple[Product, ...] = (Product.WEBSITE, Product.CMS, Product.CRM)


def validate_build_config(raw: BuildConfig | dict[str, Any]) -> BuildConfig:
    """Coerce wizard input into a ``BuildConfig``.

    Raises:
        ConfigurationError: If the input does not validate.
    """
    if isinstance(raw, BuildConfig):
        return raw
    try:
        return BuildConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid build configuration: {exc}") from exc


@contextmanager
def workspace(root: Path, build_id: str) -> Iterator[Path]:
    """Exclusive build directory, removed however the build ends."""
    path = root / build_id
    path.mkdir(parents=True, exist_ok=False)
    try:
        yield path
    finally:
        if path.exists():
            shutil.rmtree(path)


class PackageGenerator:
    """Runs one build from validated config to stored archive."""

    def __init__(
        self,
        config: Config,
        store: TemplateStore,
        storage: StorageBackend,
        resolver: FeatureResolver | None = None,
        injector: AssetInjector | None = None,
        assembler: PackageAssembler | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.storage = storage
        self.resolver = resolver or FeatureResolver()
        self.injector = injector or AssetInjector()
        self.assembler = assembler or PackageAssembler(
            compression_level=config.compression_level
        )

    # -- Public API --------------------------------------------------------

    async def generate(self, build_config: BuildConfig | dict[str, Any]) -> BuildResult:
        """Generate, archive and store a package.

        Returns:
            The ``BuildResult`` describing the stored archive.

        Raises:
            ConfigurationError: Invalid input; nothing was written.
            ResolverError: An enabled feature is unknown; nothing was written.
            TemplateError, AssemblyError: The build failed; the workspace is gone.
            StorageError: Storing failed; the local archive was kept.
        """
        cfg = validate_build_config(build_config)
        self._validate_features(cfg)

        build_id = str(uuid.uuid4())
        slug = slugify(cfg.company.name)
        password = cfg.company.default_password or generate_password()
        tokens = build_token_map(cfg, slug, password)
        archive_path = self.config.output_dir / f"{slug}-{build_id[:8]}.zip"

        started = time.monotonic()
        logger.info("Build %s started for %s (%s)", build_id, cfg.company.name,
                    ", ".join(p.value for p in cfg.products))
        await asyncio.to_thread(self._build_archive, build_id, cfg, tokens, archive_path)
        handle = await self.storage.store(archive_path)
        logger.info("Build %s finished in %s", build_id, format_duration(time.monotonic() - started))

        return BuildResult(
            build_id=build_id,
            archive_filename=archive_path.name,
            product_slug=slug,
            storage_handle=handle,
            storage_backend=self.storage.kind,
            generated_default_password=password,
        )

    def list_templates(self) -> list[str]:
        """Template names available in the store."""
        return self.store.list_products()

    def clean_old_builds(self, max_age: float = 24 * 60 * 60) -> int:
        """Delete archives and stale workspaces older than *max_age* seconds."""
        output = self.config.output_dir
        if not output.is_dir():
            return 0
        cutoff = time.time() - max_age
        cleaned = 0
        for entry in output.iterdir():
            if entry.name.startswith("."):
                continue
            if entry.stat().st_mtime >= cutoff:
                continue
            if entry.is_dir():
                shutil.rmtree(entry)
            else:
                entry.unlink()
            cleaned += 1
        if cleaned:
            logger.info("Removed %d old build artefact(s) from %s", cleaned, output)
        return cleaned

    # -- Internal ----------------------------------------------------------

    def _validate_features(self, cfg: BuildConfig) -> None:
        for product in cfg.products:
            enabled = cfg.features_for(product)
            manifest = self.store.manifest(product)
            if manifest is not None and enabled:
                manifest.validate_features(enabled, product=product.value)

    def _build_archive(
        self,
        build_id: str,
        cfg: BuildConfig,
        tokens: dict[str, str],
        archive_path: Path,
    ) -> Path:
        with workspace(self.config.output_dir, build_id) as ws:
            for product in PRODUCT_ORDER:
                if cfg.has(product):
                    self._build_product(product, ws / product.value, cfg, tokens)
            return self.assembler.assemble(ws, cfg, tokens, archive_path)

    def _build_product(
        self,
        product: Product,
        product_dir: Path,
        cfg: BuildConfig,
        tokens: dict[str, str],
    ) -> None:
        enabled = cfg.features_for(product)
        template_dir = self.store.product_dir(product)

        report = render(template_dir, product_dir, {**tokens, **product_tokens(enabled)})
        logger.debug("Rendered %d file(s) for %s", report.files_written, product.value)
        if report.unknown_tokens:
            detail = "; ".join(
                f"{path}: {', '.join(sorted(found))}"
                for path, found in sorted(report.unknown_tokens.items())
            )
            if self.config.strict_tokens:
                raise TemplateError(f"Unknown tokens in {product.value}: {detail}", product=product.value)
            logger.warning("Unknown tokens left in %s: %s", product.value, detail)

        resolution = self.resolver.strip(product_dir, self.store.manifest(product), enabled)
        self.injector.inject(
            product, product_dir, cfg.branding, cfg.content, skip=resolution.neutralized
        )
