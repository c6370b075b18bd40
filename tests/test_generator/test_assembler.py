"""Tests for the package assembler and setup guide rendering.

Covers:
- Product placement (CMS nested under the website or standalone)
- Template file finalisation
- render.yaml copy and merge
- README.md / deploy.sh rendering from the same setup plan
- Deterministic archive writing with preserved permissions
- Workspace removal on success and failure
"""

from __future__ import annotations

import os
import stat
import zipfile
from datetime import date
from pathlib import Path

import pytest
import yaml

from buildfactory.errors import AssemblyError
from buildfactory.generator.assembler import (
    ZIP_EPOCH,
    PackageAssembler,
    finalize_templates,
    placement,
    write_archive,
)
from buildfactory.generator.docs import SetupGuideRenderer, setup_plan
from buildfactory.models import BuildConfig, Product


def _config(*products: str, features: dict | None = None) -> BuildConfig:
    return BuildConfig.model_validate({
        "products": list(products),
        "company": {"name": "Acme Roofing"},
        "features": features or {},
    })


TOKENS = {
    "{{COMPANY_SLUG}}": "acme-roofing",
    "{{ADMIN_EMAIL}}": "admin@acme.test",
    "{{DEFAULT_PASSWORD}}": "pa55word",
}


def _make_workspace(root: Path, *products: str) -> Path:
    ws = root / "ws"
    for product in products:
        base = ws / product
        (base / "src").mkdir(parents=True)
        (base / "src" / "index.js").write_text(f"// {product}\n")
    return ws


# ---------------------------------------------------------------------------
# Placement
# ---------------------------------------------------------------------------


class TestPlacement:
    @pytest.mark.unit
    def test_cms_nested_with_website(self):
        assert placement([Product.WEBSITE, Product.CMS]) == {
            Product.WEBSITE: "website",
            Product.CMS: "website/admin",
        }

    @pytest.mark.unit
    def test_standalone_cms(self):
        assert placement([Product.CMS, Product.CRM]) == {
            Product.CMS: "cms",
            Product.CRM: "crm",
        }

    @pytest.mark.unit
    def test_order_independent(self):
        assert placement([Product.CMS, Product.WEBSITE])[Product.CMS] == "website/admin"


# ---------------------------------------------------------------------------
# Finalisation and descriptors
# ---------------------------------------------------------------------------


class TestFinalizeTemplates:
    @pytest.mark.unit
    def test_renames_and_replaces(self, tmp_path):
        (tmp_path / "backend").mkdir()
        (tmp_path / "backend" / ".env.template").write_text("rendered\n")
        (tmp_path / "backend" / ".env").write_text("stale\n")
        (tmp_path / "render.yaml.template").write_text("services: []\n")

        renamed = finalize_templates(tmp_path)

        assert sorted(p.name for p in renamed) == [".env", "render.yaml"]
        assert (tmp_path / "backend" / ".env").read_text() == "rendered\n"
        assert not list(tmp_path.rglob("*.template"))


class TestWriteDescriptor:
    @pytest.mark.unit
    def test_none_found(self, tmp_path):
        assert PackageAssembler.write_descriptor(tmp_path, {Product.CRM: "crm"}) is None

    @pytest.mark.unit
    def test_single_copied_verbatim(self, tmp_path):
        (tmp_path / "crm").mkdir()
        text = "# CRM blueprint\nservices:\n  - name: acme-api\n"
        (tmp_path / "crm" / "render.yaml").write_text(text)

        target = PackageAssembler.write_descriptor(tmp_path, {Product.CRM: "crm"})
        assert target == tmp_path / "render.yaml"
        assert target.read_text() == text
        assert (tmp_path / "crm" / "render.yaml").exists()

    @pytest.mark.unit
    def test_multiple_merged(self, tmp_path):
        (tmp_path / "crm").mkdir()
        (tmp_path / "website").mkdir()
        (tmp_path / "crm" / "render.yaml").write_text(
            "services:\n  - name: acme-api\ndatabases:\n  - name: acme-db\n"
        )
        (tmp_path / "website" / "render.yaml").write_text("services:\n  - name: acme-site\n")

        target = PackageAssembler.write_descriptor(
            tmp_path, {Product.WEBSITE: "website", Product.CRM: "crm"}
        )
        merged = yaml.safe_load(target.read_text())
        assert [s["name"] for s in merged["services"]] == ["acme-api", "acme-site"]
        assert merged["databases"] == [{"name": "acme-db"}]


# ---------------------------------------------------------------------------
# Setup guide
# ---------------------------------------------------------------------------


class TestSetupGuide:
    @pytest.mark.unit
    def test_plan_for_every_product(self):
        cfg = _config("website", "cms", "crm", features={"crm": ["invoices"]})
        plan = setup_plan(cfg, placement(cfg.products), "acme-roofing")
        assert [p.path for p in plan] == ["website", "website/admin", "crm/backend", "crm/frontend"]
        assert plan[2].features == ["invoices"]
        assert "createdb acme_roofing_crm" in plan[2].summary

    @pytest.mark.unit
    def test_readme_and_script_match(self, tmp_path):
        cfg = _config("website", "crm")
        renderer = SetupGuideRenderer()
        context = renderer.context(cfg, TOKENS, placement(cfg.products), generated_on=date(2026, 1, 2))
        readme, script = renderer.write(tmp_path, context)

        readme_text = readme.read_text()
        script_text = script.read_text()
        assert readme_text.startswith("# Acme Roofing Software Package")
        assert "Generated on 2026-01-02" in readme_text
        assert "`admin@acme.test`" in readme_text
        assert "`pa55word`" in readme_text

        assert script_text.startswith("#!/usr/bin/env bash")
        assert '(cd "$ROOT/website" && npm install)' in script_text
        assert '(cd "$ROOT/crm/backend" && npx prisma migrate deploy)' in script_text
        assert '(cd "$ROOT/crm/frontend" && npm run build)' in script_text
        for item in setup_plan(cfg, placement(cfg.products), "acme-roofing"):
            for step in item.steps:
                assert step.command in readme_text

    @pytest.mark.unit
    def test_script_header_keeps_multiline_name_in_comment(self, tmp_path):
        cfg = BuildConfig.model_validate({
            "products": ["website"],
            "company": {"name": "Acme\ntouch /tmp/pwned\r\n  Roofing"},
        })
        renderer = SetupGuideRenderer()
        context = renderer.context(cfg, TOKENS, placement(cfg.products))
        _, script = renderer.write(tmp_path, context)

        lines = script.read_text().splitlines()
        assert lines[1] == "# Setup script for Acme touch /tmp/pwned Roofing (acme-roofing)"
        assert not any(line.startswith("touch") for line in lines)


# ---------------------------------------------------------------------------
# Archive
# ---------------------------------------------------------------------------


class TestWriteArchive:
    @pytest.mark.unit
    def test_deterministic(self, tmp_path):
        source = tmp_path / "src"
        (source / "b").mkdir(parents=True)
        (source / "b" / "two.txt").write_text("two")
        (source / "one.txt").write_text("one")

        first = tmp_path / "first.zip"
        second = tmp_path / "second.zip"
        assert write_archive(source, first) == 2
        os.utime(source / "one.txt", (0, 0))
        write_archive(source, second)

        assert first.read_bytes() == second.read_bytes()
        with zipfile.ZipFile(first) as zf:
            assert zf.namelist() == ["b/two.txt", "one.txt"]
            assert all(info.date_time == ZIP_EPOCH for info in zf.infolist())

    @pytest.mark.unit
    def test_skips_infrastructure(self, tmp_path):
        source = tmp_path / "src"
        (source / "node_modules" / "x").mkdir(parents=True)
        (source / "node_modules" / "x" / "index.js").write_text("")
        (source / "app.js").write_text("")
        write_archive(source, tmp_path / "out.zip")
        with zipfile.ZipFile(tmp_path / "out.zip") as zf:
            assert zf.namelist() == ["app.js"]

    @pytest.mark.unit
    @pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
    def test_permissions_recorded(self, tmp_path):
        source = tmp_path / "src"
        source.mkdir()
        (source / "run.sh").write_text("#!/bin/sh\n")
        (source / "run.sh").chmod(0o755)
        write_archive(source, tmp_path / "out.zip")
        with zipfile.ZipFile(tmp_path / "out.zip") as zf:
            mode = zf.getinfo("run.sh").external_attr >> 16
        assert stat.S_IMODE(mode) == 0o755


# ---------------------------------------------------------------------------
# assemble()
# ---------------------------------------------------------------------------


class TestAssemble:
    @pytest.mark.unit
    def test_nested_layout_and_cleanup(self, tmp_path):
        ws = _make_workspace(tmp_path, "website", "cms", "crm")
        archive = tmp_path / "out" / "acme.zip"

        result = PackageAssembler().assemble(ws, _config("website", "cms", "crm"), TOKENS, archive)

        assert result == archive
        assert not ws.exists()
        with zipfile.ZipFile(archive) as zf:
            names = set(zf.namelist())
        assert {"README.md", "deploy.sh", "website/src/index.js",
                "website/admin/src/index.js", "crm/src/index.js"} <= names
        assert not any(n.startswith("cms/") for n in names)

    @pytest.mark.unit
    def test_standalone_cms_directory(self, tmp_path):
        ws = _make_workspace(tmp_path, "cms")
        archive = tmp_path / "cms.zip"
        PackageAssembler().assemble(ws, _config("cms"), TOKENS, archive)
        with zipfile.ZipFile(archive) as zf:
            assert "cms/src/index.js" in zf.namelist()

    @pytest.mark.unit
    @pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
    def test_deploy_script_executable(self, tmp_path):
        ws = _make_workspace(tmp_path, "website")
        archive = tmp_path / "site.zip"
        PackageAssembler().assemble(ws, _config("website"), TOKENS, archive)
        with zipfile.ZipFile(archive) as zf:
            mode = zf.getinfo("deploy.sh").external_attr >> 16
        assert mode & stat.S_IXUSR

    @pytest.mark.unit
    def test_failure_removes_workspace_and_partial_archive(self, tmp_path):
        ws = _make_workspace(tmp_path, "website")
        archive = tmp_path / "broken.zip"
        renderer = SetupGuideRenderer(template_dir=tmp_path / "no-templates")

        with pytest.raises(AssemblyError):
            PackageAssembler(renderer=renderer).assemble(ws, _config("website"), TOKENS, archive)

        assert not ws.exists()
        assert not archive.exists()

    @pytest.mark.unit
    def test_nest_collision(self, tmp_path):
        ws = _make_workspace(tmp_path, "website", "cms")
        (ws / "website" / "admin").mkdir()
        with pytest.raises(AssemblyError, match="already exists"):
            PackageAssembler().assemble(ws, _config("website", "cms"), TOKENS, tmp_path / "x.zip")
        assert not ws.exists()
