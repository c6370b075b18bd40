"""Feature resolver.

Strips a rendered product workspace down to the files required by the
core plus the enabled features, regenerates the composition root from the
manifest's registration list, and neutralises frontend data that belongs to
disabled features.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from buildfactory.errors import TemplateError
from buildfactory.generator.manifest import (
    MANIFEST_FILENAME,
    CompositionRoot,
    FeatureManifest,
)
from buildfactory.generator.store import load_template_json
from buildfactory.utils import write_json

logger = logging.getLogger(__name__)


@dataclass
class ResolutionReport:
    """Outcome of one ``strip`` call.  Paths are relative to the product root."""

    deleted: list[str] = field(default_factory=list)
    neutralized: list[str] = field(default_factory=list)
    registered_modules: list[str] = field(default_factory=list)
    hidden_nav_items: list[str] = field(default_factory=list)
    skipped: bool = False


class FeatureResolver:
    """Applies a ``FeatureManifest`` to a rendered workspace."""

    def strip(
        self,
        workspace_dir: Path,
        manifest: FeatureManifest | None,
        enabled: list[str],
    ) -> ResolutionReport:
        """Remove everything the enabled features do not need.

        Args:
            workspace_dir: Root of one rendered product.
            manifest: The product's manifest.  ``None`` skips pruning.
            enabled: Enabled feature IDs.  Validated against the manifest.

        Raises:
            ResolverError: If *enabled* names a feature the manifest lacks.
        """
        report = ResolutionReport()
        if manifest is None:
            logger.warning("No feature manifest in %s; skipping feature pruning", workspace_dir)
            report.skipped = True
            return report

        manifest.validate_features(enabled)
        retained = manifest.retained(enabled)
        disabled = [fid for fid in manifest.feature_ids() if fid not in enabled]
        layout = manifest.layout
        keep = set(manifest.always_keep)

        # Backend: top-level files only; service subdirectories survive.
        self._prune_dir(workspace_dir, layout.routes_dir, retained.routes | keep, report)
        self._prune_dir(workspace_dir, layout.services_dir, retained.services | keep, report)

        if manifest.composition_root is not None:
            report.registered_modules = self._write_composition_root(
                workspace_dir, manifest.composition_root, layout.routes_dir
            )

        # Frontend: only files owned by a disabled feature are touched.
        for fid in disabled:
            files = manifest.features[fid].frontend
            for view in files.views:
                if view in retained.views:
                    continue
                path = workspace_dir / layout.views_dir / view
                if path.is_file():
                    path.unlink()
                    report.deleted.append(f"{layout.views_dir}/{view}")
            for data in files.data:
                if data in retained.data:
                    continue
                path = workspace_dir / layout.data_dir / data
                if path.is_file():
                    neutralize_file(path)
                    report.neutralized.append(f"{layout.data_dir}/{data}")

        if manifest.navigation:
            report.hidden_nav_items = self._update_navigation(
                workspace_dir / layout.nav_config_file, manifest.navigation, enabled
            )

        resets = [manifest.settings_resets[fid] for fid in disabled if fid in manifest.settings_resets]
        if resets:
            self._apply_settings_resets(workspace_dir / layout.settings_file, resets)

        manifest_copy = workspace_dir / MANIFEST_FILENAME
        if manifest_copy.exists():
            manifest_copy.unlink()

        logger.info(
            "Resolved %d feature(s) in %s: %d deleted, %d neutralized",
            len(enabled), workspace_dir.name, len(report.deleted), len(report.neutralized),
        )
        return report

    # -- Backend -----------------------------------------------------------

    @staticmethod
    def _prune_dir(root: Path, rel_dir: str, keep: set[str], report: ResolutionReport) -> None:
        directory = root / rel_dir
        if not directory.is_dir():
            return
        for entry in sorted(directory.iterdir()):
            if entry.is_file() and entry.name not in keep:
                entry.unlink()
                report.deleted.append(f"{rel_dir}/{entry.name}")

    @staticmethod
    def _write_composition_root(root: Path, composition: CompositionRoot, routes_dir: str) -> list[str]:
        """Replace the marker lines with lines for route files that still exist."""
        path = root / composition.path
        if not path.is_file():
            logger.warning("Composition root %s not found; nothing registered", composition.path)
            return []

        present = [m for m in composition.modules if (root / routes_dir / m.file).is_file()]
        imports = [
            composition.import_format.format(symbol=m.resolved_symbol(), file=m.file, stem=m.stem)
            for m in present
        ]
        mounts = [
            composition.mount_format.format(symbol=m.resolved_symbol(), mount=m.resolved_mount(), file=m.file)
            for m in present
        ]

        lines = path.read_text(encoding="utf-8").splitlines(keepends=True)
        output: list[str] = []
        found = {composition.import_marker: False, composition.mount_marker: False}
        for line in lines:
            marker = next((mk for mk in found if mk in line), None)
            if marker is None:
                output.append(line)
                continue
            found[marker] = True
            indent = line[: len(line) - len(line.lstrip())]
            generated = imports if marker == composition.import_marker else mounts
            output.extend(f"{indent}{text}\n" for text in generated)

        missing = [mk for mk, seen in found.items() if not seen]
        if missing:
            raise TemplateError(f"Composition root {composition.path} is missing marker(s): {', '.join(missing)}")

        path.write_text("".join(output), encoding="utf-8")
        return [m.file for m in present]

    # -- Frontend ----------------------------------------------------------

    @staticmethod
    def _update_navigation(path: Path, navigation: dict[str, str], enabled: list[str]) -> list[str]:
        if not path.is_file():
            return []
        nav = load_template_json(path)
        items = nav.get("items", nav) if isinstance(nav, dict) else nav
        if not isinstance(items, list):
            return []

        visibility = {nav_id: fid in enabled for fid, nav_id in navigation.items()}
        hidden: list[str] = []
        for item in items:
            if not isinstance(item, dict) or item.get("id") not in visibility:
                continue
            item["visible"] = visibility[item["id"]]
            if not item["visible"]:
                hidden.append(item["id"])
        write_json(nav, path)
        return hidden

    @staticmethod
    def _apply_settings_resets(path: Path, resets: list[dict[str, Any]]) -> None:
        if not path.is_file():
            return
        settings = load_template_json(path)
        if not isinstance(settings, dict):
            return
        for values in resets:
            _deep_merge(settings, values)
        write_json(settings, path)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def neutralize_file(path: Path) -> None:
    """Replace a data file with a valid empty value of the same shape.

    JSON objects become ``{}``, everything else JSON becomes ``[]``; non-JSON
    files are truncated.
    """
    if path.suffix.lower() != ".json":
        path.write_text("", encoding="utf-8")
        return
    try:
        original = json.loads(path.read_text(encoding="utf-8") or "[]")
    except json.JSONDecodeError:
        original = []
    path.write_text("{}\n" if isinstance(original, dict) else "[]\n", encoding="utf-8")


def _deep_merge(target: dict[str, Any], values: dict[str, Any]) -> None:
    for key, value in values.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        else:
            target[key] = value
