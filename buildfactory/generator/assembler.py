"""Package assembler.

Arranges the per-product workspaces into the final archive layout, writes
the root setup guide and script, merges deployment descriptors, and
streams the workspace into a ZIP archive.  The workspace is always removed
once assembly ends, whether or not it succeeded.
"""

from __future__ import annotations

import logging
import shutil
import stat
import zipfile
from pathlib import Path
from typing import Any

import yaml

from buildfactory.errors import AssemblyError, FactoryError
from buildfactory.generator.docs import SetupGuideRenderer
from buildfactory.models import BuildConfig, Product
from buildfactory.utils import iter_files, make_executable

logger = logging.getLogger(__name__)

DESCRIPTOR_NAME = "render.yaml"
TEMPLATE_SUFFIX = ".template"

# Every archive entry carries this timestamp so identical trees zip identically.
ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


def placement(products: list[Product]) -> dict[Product, str]:
    """Archive-relative directory of each selected product.

    The CMS is nested at ``website/admin`` when the website is also selected
    and otherwise sits in its own top-level ``cms`` directory.
    """
    layout: dict[Product, str] = {}
    if Product.WEBSITE in products:
        layout[Product.WEBSITE] = "website"
        if Product.CMS in products:
            layout[Product.CMS] = "website/admin"
    elif Product.CMS in products:
        layout[Product.CMS] = "cms"
    if Product.CRM in products:
        layout[Product.CRM] = "crm"
    return layout


class PackageAssembler:
    """Turns a build workspace into a distributable archive."""

    def __init__(
        self,
        renderer: SetupGuideRenderer | None = None,
        compression_level: int = 6,
    ) -> None:
        self.renderer = renderer or SetupGuideRenderer()
        self.compression_level = compression_level

    def assemble(
        self,
        workspace_dir: Path,
        config: BuildConfig,
        tokens: dict[str, str],
        archive_path: Path,
    ) -> Path:
        """Assemble *workspace_dir* into *archive_path* and remove the workspace.

        Products are expected at ``<workspace>/<product>`` as rendered.

        Raises:
            AssemblyError: On any failure; the partial archive is removed.
        """
        try:
            layout = placement(config.products)
            self.nest(workspace_dir, layout)
            finalized = finalize_templates(workspace_dir)
            logger.debug("Finalized %d template file(s)", len(finalized))
            self.write_descriptor(workspace_dir, layout)

            context = self.renderer.context(config, tokens, layout)
            _, script = self.renderer.write(workspace_dir, context)
            make_executable(script)

            count = write_archive(workspace_dir, archive_path, self.compression_level)
            logger.info("Archived %d file(s) into %s", count, archive_path.name)
            return archive_path
        except FactoryError:
            archive_path.unlink(missing_ok=True)
            raise
        except Exception as exc:
            archive_path.unlink(missing_ok=True)
            raise AssemblyError(f"Failed to assemble package: {exc}") from exc
        finally:
            if workspace_dir.exists():
                shutil.rmtree(workspace_dir)

    # -- Layout ------------------------------------------------------------

    @staticmethod
    def nest(workspace_dir: Path, layout: dict[Product, str]) -> None:
        """Move each rendered product to its archive location."""
        for product, rel in layout.items():
            source = workspace_dir / product.value
            target = workspace_dir / rel
            if source == target or not source.exists():
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            if target.exists():
                raise AssemblyError(f"Cannot nest {product.value}: {rel} already exists")
            shutil.move(str(source), str(target))

    # -- Deployment descriptor ---------------------------------------------

    @staticmethod
    def write_descriptor(workspace_dir: Path, layout: dict[Product, str]) -> Path | None:
        """Write one canonical ``render.yaml`` at the workspace root.

        Product copies stay in place.  A single descriptor is copied
        verbatim; several are merged by concatenating their service,
        database and env-group lists.
        """
        found = [
            workspace_dir / rel / DESCRIPTOR_NAME
            for rel in sorted(set(layout.values()))
            if (workspace_dir / rel / DESCRIPTOR_NAME).is_file()
        ]
        if not found:
            return None

        target = workspace_dir / DESCRIPTOR_NAME
        if len(found) == 1:
            shutil.copyfile(found[0], target)
            return target

        merged: dict[str, Any] = {}
        for path in found:
            doc = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
            for key, value in doc.items():
                if isinstance(value, list):
                    merged.setdefault(key, []).extend(value)
                else:
                    merged.setdefault(key, value)
        target.write_text(yaml.safe_dump(merged, sort_keys=False), encoding="utf-8")
        return target


# ---------------------------------------------------------------------------
# Module-level helpers
# ---------------------------------------------------------------------------


def finalize_templates(workspace_dir: Path) -> list[Path]:
    """Rename ``*.template`` files (already token-rendered) to their final names.

    An existing file with the final name is replaced.
    """
    renamed: list[Path] = []
    for path in list(iter_files(workspace_dir, lambda p: p.name.endswith(TEMPLATE_SUFFIX))):
        final = path.with_name(path.name[: -len(TEMPLATE_SUFFIX)])
        path.replace(final)
        renamed.append(final)
    return renamed


def write_archive(source_dir: Path, archive_path: Path, compression_level: int = 6) -> int:
    """Zip *source_dir* deterministically and return the number of entries.

    Entries are sorted, stamped with ``ZIP_EPOCH`` and keep their Unix
    permission bits, so executable scripts stay executable.
    """
    archive_path.parent.mkdir(parents=True, exist_ok=True)
    files = sorted(iter_files(source_dir), key=lambda p: p.relative_to(source_dir).as_posix())
    with zipfile.ZipFile(
        archive_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=compression_level
    ) as zf:
        for path in files:
            info = zipfile.ZipInfo(path.relative_to(source_dir).as_posix(), date_time=ZIP_EPOCH)
            mode = stat.S_IMODE(path.stat().st_mode)
            info.external_attr = (stat.S_IFREG | mode) << 16
            zf.writestr(
                info,
                path.read_bytes(),
                compress_type=zipfile.ZIP_DEFLATED,
                compresslevel=compression_level,
            )
    return len(files)
