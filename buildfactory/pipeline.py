"""Build Factory facade and CLI.

``Factory`` is the single entry point the calling layer uses: it runs
generation, keeps the tenant and build records in step, and delegates
deployment to the ``DeploymentOrchestrator``.

CLI usage::

    python -m buildfactory.pipeline generate wizard.json --company acme-co
    python -m buildfactory.pipeline deploy <tenant-id>
    python -m buildfactory.pipeline status <tenant-id>
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import uuid
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from buildfactory.config import Config
from buildfactory.deploy.orchestrator import DeploymentOrchestrator
from buildfactory.errors import ConfigurationError, FactoryError, RecordNotFoundError, StorageError
from buildfactory.generator import FileSystemTemplateStore, PackageGenerator, TemplateStore
from buildfactory.generator.generator import validate_build_config
from buildfactory.models import BuildConfig, BuildResult, DeployStatus, GeneratedBuild, Tenant
from buildfactory.records import RecordStore
from buildfactory.storage import StorageBackend, get_storage_backend
from buildfactory.utils import (
    configure_logging,
    console,
    print_error,
    print_success,
    print_summary_table,
    print_warning,
)

logger = logging.getLogger(__name__)


class Factory:
    """Generation and deployment for every tenant, behind one object."""

    def __init__(
        self,
        config: Config | None = None,
        *,
        store: TemplateStore | None = None,
        storage: StorageBackend | None = None,
        records: RecordStore | None = None,
        orchestrator: DeploymentOrchestrator | None = None,
    ) -> None:
        self.config = config or Config.from_env()
        self.config.ensure_directories()
        self.store = store or FileSystemTemplateStore(self.config.templates_dir)
        self.storage = storage or get_storage_backend(self.config)
        self.records = records or RecordStore.from_config(self.config)
        self.generator = PackageGenerator(self.config, self.store, self.storage)
        self.orchestrator = orchestrator or DeploymentOrchestrator(
            self.config, self.records, self.storage
        )

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate(
        self,
        build_config: BuildConfig | dict[str, Any],
        company_id: str,
        tenant_id: str | None = None,
    ) -> BuildResult:
        """Generate a package and record it against a (new or existing) tenant."""
        cfg = validate_build_config(build_config)
        tenant = await self.records.require_tenant(tenant_id, company_id) if tenant_id else None

        result = await self.generator.generate(cfg)

        if tenant is None:
            tenant = Tenant(
                id=str(uuid.uuid4()),
                company_id=company_id,
                name=cfg.company.name,
                slug=await self._unique_slug(result.product_slug),
                products=list(cfg.products),
                features=dict(cfg.features),
                config=cfg,
                billing=cfg.billing,
            )
            await self.records.save_tenant(tenant)
        else:
            def refresh(t: Tenant) -> None:
                t.name = cfg.company.name
                t.products = list(cfg.products)
                t.features = dict(cfg.features)
                t.config = cfg
                t.billing = cfg.billing or t.billing

            tenant = await self.records.update_tenant(tenant.id, refresh)

        await self.records.save_build(GeneratedBuild(
            build_id=result.build_id,
            tenant_id=tenant.id,
            company_id=company_id,
            products=list(cfg.products),
            features=dict(cfg.features),
            archive_filename=result.archive_filename,
            storage_handle=result.storage_handle,
            storage_backend=result.storage_backend,
        ))
        return result.model_copy(update={"tenant_id": tenant.id})

    async def regenerate(self, build_id: str, company_id: str) -> BuildResult:
        """Rebuild from the tenant's saved config, replacing the stored archive."""
        build = await self._require_build(build_id, company_id)
        tenant = await self.records.require_tenant(build.tenant_id, company_id)
        if tenant.config is None:
            raise ConfigurationError(f"Tenant {tenant.id} has no saved build configuration")

        result = await self.generator.generate(tenant.config)
        try:
            await self.storage.discard(build.storage_handle)
        except StorageError as exc:
            logger.warning("Could not discard previous archive %s: %s", build.storage_handle, exc)

        await self.records.save_build(build.model_copy(update={
            "archive_filename": result.archive_filename,
            "storage_handle": result.storage_handle,
            "storage_backend": result.storage_backend,
        }))
        return result.model_copy(update={"build_id": build.build_id, "tenant_id": tenant.id})

    async def download_location(self, build_id: str, company_id: str) -> str | None:
        """Signed URL or local path of the build's archive; ``None`` if it is gone."""
        build = await self._require_build(build_id, company_id)
        return await self.storage.resolve(build.storage_handle)

    async def delete_build(self, build_id: str, company_id: str) -> None:
        build = await self._require_build(build_id, company_id)
        await self.storage.discard(build.storage_handle)
        await self.records.delete_build(build_id)

    async def list_builds(self, tenant_id: str, company_id: str) -> list[GeneratedBuild]:
        await self.records.require_tenant(tenant_id, company_id)
        return await self.records.list_builds(tenant_id)

    def list_templates(self) -> list[str]:
        return self.generator.list_templates()

    def clean_old_builds(self, max_age: float = 24 * 60 * 60) -> int:
        return self.generator.clean_old_builds(max_age)

    # ------------------------------------------------------------------
    # Deployment
    # ------------------------------------------------------------------

    async def deploy(self, tenant_id: str, company_id: str | None = None, build_id: str | None = None) -> dict[str, str]:
        return await self.orchestrator.deploy(tenant_id, build_id=build_id, company_id=company_id)

    async def check_status(self, tenant_id: str, company_id: str | None = None) -> DeployStatus:
        return await self.orchestrator.check_status(tenant_id, company_id)

    async def redeploy(self, tenant_id: str, company_id: str | None = None) -> dict[str, str]:
        return await self.orchestrator.redeploy(tenant_id, company_id)

    async def rollback(self, tenant_id: str, company_id: str | None = None) -> dict[str, str]:
        return await self.orchestrator.rollback(tenant_id, company_id)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _require_build(self, build_id: str, company_id: str) -> GeneratedBuild:
        build = await self.records.get_build(build_id, company_id)
        if build is None:
            raise RecordNotFoundError(f"Build not found: {build_id}")
        return build

    async def _unique_slug(self, slug: str) -> str:
        taken = {t.slug for t in await self.records.list_tenants()}
        if slug not in taken:
            return slug
        suffix = 2
        while f"{slug}-{suffix}" in taken:
            suffix += 1
        return f"{slug}-{suffix}"


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


async def _run_command(args: Any, factory: Factory) -> int:
    if args.command == "templates":
        names = factory.list_templates()
        if not names:
            print_warning(f"No templates found in {factory.config.templates_dir}")
        for name in names:
            console.print(f"  {name}")
        return 0

    if args.command == "clean":
        removed = factory.clean_old_builds(args.max_age_hours * 3600)
        print_success(f"Removed {removed} old build artefact(s)")
        return 0

    if args.command == "generate":
        raw = json.loads(Path(args.config).read_text(encoding="utf-8"))
        result = await factory.generate(raw, args.company, tenant_id=args.tenant)
        print_summary_table({
            "Build": result.build_id,
            "Tenant": result.tenant_id,
            "Archive": result.archive_filename,
            "Stored at": result.storage_handle,
            "Admin password": result.generated_default_password,
        }, title="Package generated")
        return 0

    if args.command == "status":
        status = await factory.check_status(args.tenant)
        print_summary_table(
            {role: f"{h.status} ({h.service_id})" for role, h in status.services.items()}
            or {"Services": "none recorded"},
            title=f"Deployment: {status.status}",
        )
        return 0

    # deploy / redeploy / rollback
    action = getattr(factory, args.command)
    ack = await action(args.tenant)
    console.print(f"[cyan]{args.command}[/cyan] started (job {ack['job_id']})")
    if args.no_wait:
        return 0
    job = await factory.orchestrator.runner.wait(ack["job_id"])
    tenant = await factory.records.require_tenant(args.tenant)
    print_summary_table(tenant.summary(), title=f"{args.command} {job.status.value if job else 'unknown'}")
    return 0 if job is not None and not job.errors else 1


def main() -> None:
    """CLI entry point for ``python -m buildfactory.pipeline``."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Build Factory -- generate and deploy tenant software packages",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python -m buildfactory.pipeline generate wizard.json --company acme\n"
            "  python -m buildfactory.pipeline deploy 3f1c...\n"
            "  python -m buildfactory.pipeline clean --max-age-hours 48\n"
        ),
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    gen = sub.add_parser("generate", help="Generate a package from a wizard JSON file")
    gen.add_argument("config", help="Path to the build configuration JSON")
    gen.add_argument("--company", required=True, help="Owning company id")
    gen.add_argument("--tenant", default=None, help="Existing tenant id to regenerate for")

    for name, text in (
        ("deploy", "Deploy the tenant's latest build"),
        ("redeploy", "Trigger a fresh deploy of every service"),
        ("rollback", "Roll every service back to its previous deploy"),
    ):
        cmd = sub.add_parser(name, help=text)
        cmd.add_argument("tenant", help="Tenant id")
        cmd.add_argument("--no-wait", action="store_true", help="Return once the job has started")

    status = sub.add_parser("status", help="Show deployment status")
    status.add_argument("tenant", help="Tenant id")

    sub.add_parser("templates", help="List available product templates")

    clean = sub.add_parser("clean", help="Remove old archives and workspaces")
    clean.add_argument("--max-age-hours", type=float, default=24.0)

    args = parser.parse_args()
    configure_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        factory = Factory(Config.from_env())
        code = asyncio.run(_run_command(args, factory))
    except (FactoryError, ValidationError, OSError, json.JSONDecodeError) as exc:
        print_error(f"Error: {exc}")
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
