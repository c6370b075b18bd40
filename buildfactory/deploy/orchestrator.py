"""Deployment orchestrator.

Drives a tenant through ``generated -> deploying -> deployed`` (or back to
``generated`` on failure).  The caller only ever sees the synchronous state
transition; all remote work runs as a tracked ``DeployJob``:

1. fetch the build archive and extract it to scratch space;
2. create (or reuse) the GitHub repository and push the sources;
3. provision the Postgres database when the CRM is included;
4. create one Render service per deployable product and wire their URLs;
5. poll every service until it is live;
6. record URLs and service IDs on the tenant.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
import zipfile
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from buildfactory.config import Config
from buildfactory.deploy.github import GitHubClient
from buildfactory.deploy.jobs import DeployJob, JobKind, JobRunner, JobStatus
from buildfactory.deploy.render import RenderClient, service_url
from buildfactory.errors import (
    DeploymentError,
    DeployNotConfiguredError,
    NotDeployedError,
    RecordNotFoundError,
)
from buildfactory.models import (
    DeployStatus,
    GeneratedBuild,
    Product,
    ServiceHealth,
    ServiceRole,
    Tenant,
    TenantStatus,
)
from buildfactory.records import RecordStore
from buildfactory.storage import StorageBackend
from buildfactory.utils import generate_secret

logger = logging.getLogger(__name__)

# Render deploy / database states, grouped for status aggregation.
LIVE_STATES = frozenset({"live", "available"})
IN_PROGRESS_STATES = frozenset({
    "created", "queued", "build_in_progress", "update_in_progress",
    "pre_deploy_in_progress", "creating", "recovery_in_progress",
})
FAILED_STATES = frozenset({"build_failed", "update_failed", "pre_deploy_failed", "canceled"})
SUSPENDED_STATES = frozenset({"deactivated", "suspended"})
ROLLBACK_TARGET_STATES = frozenset({"live", "deactivated"})


def aggregate_status(statuses: list[str]) -> str:
    """Fold per-service states into one of live/deploying/failed/suspended/unknown."""
    if not statuses:
        return "unknown"
    if all(s in LIVE_STATES for s in statuses):
        return "live"
    if any(s in FAILED_STATES for s in statuses):
        return "failed"
    if any(s in IN_PROGRESS_STATES for s in statuses):
        return "deploying"
    if any(s in SUSPENDED_STATES for s in statuses):
        return "suspended"
    return "unknown"


def _extract(archive: Path, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    root = dest.resolve()
    with zipfile.ZipFile(archive) as zf:
        for name in zf.namelist():
            if not (dest / name).resolve().is_relative_to(root):
                raise DeploymentError(f"Archive entry escapes extraction directory: {name}")
        zf.extractall(dest)
        # zipfile drops permission bits; restore them so deploy.sh stays executable.
        for info in zf.infolist():
            mode = (info.external_attr >> 16) & 0o777
            if mode and not info.is_dir():
                (dest / info.filename).chmod(mode)


class DeploymentOrchestrator:
    """Owns the deployment state machine for every tenant."""

    def __init__(
        self,
        config: Config,
        records: RecordStore,
        storage: StorageBackend,
        github: GitHubClient | None = None,
        render: RenderClient | None = None,
        runner: JobRunner | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.records = records
        self.storage = storage
        self.github = github or GitHubClient(config.deploy)
        self.render = render or RenderClient(config.deploy)
        self.runner = runner or JobRunner()
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def deploy(
        self,
        tenant_id: str,
        build_id: str | None = None,
        company_id: str | None = None,
    ) -> dict[str, str]:
        """Start deploying the tenant's latest (or given) build.

        Returns immediately with ``{"status": "deploying", "job_id": ...}``.
        Failures of the background job are logged and reflected in the
        tenant record, never raised here.

        Raises:
            DeployNotConfiguredError: Deployment credentials are missing.
            RecordNotFoundError: Unknown tenant or no build to deploy.
            DeploymentConflictError: The tenant is not in ``generated``.
        """
        self._require_configured()
        tenant = await self.records.require_tenant(tenant_id, company_id)
        build = await self._build_for(tenant, build_id)
        await self.records.transition(tenant_id, {TenantStatus.GENERATED}, TenantStatus.DEPLOYING)

        job = DeployJob(tenant_id=tenant_id, kind=JobKind.DEPLOY)
        self.runner.submit(job, lambda j: self._provision(j, tenant, build), self._finalize)
        logger.info("Deploy job %s started for tenant %s", job.id, tenant_id)
        return {"status": TenantStatus.DEPLOYING.value, "job_id": job.id}

    async def check_status(self, tenant_id: str, company_id: str | None = None) -> DeployStatus:
        """Aggregate the health of every recorded service.

        A tenant without recorded services reports ``not_deployed`` and no
        platform call is made.
        """
        tenant = await self.records.require_tenant(tenant_id, company_id)
        if not tenant.service_ids:
            return DeployStatus(status="not_deployed")
        services = await self._collect_health(tenant.service_ids)
        return DeployStatus(
            status=aggregate_status([h.status for h in services.values()]),
            services=services,
        )

    async def redeploy(self, tenant_id: str, company_id: str | None = None) -> dict[str, str]:
        """Trigger a fresh deploy of every recorded service."""
        tenant, services = await self._begin_service_job(tenant_id, company_id)
        job = DeployJob(tenant_id=tenant_id, kind=JobKind.REDEPLOY)
        self.runner.submit(job, lambda j: self._redeploy(j, services), self._finalize)
        return {"status": TenantStatus.DEPLOYING.value, "job_id": job.id}

    async def rollback(self, tenant_id: str, company_id: str | None = None) -> dict[str, str]:
        """Roll every recorded service back to its previous successful deploy."""
        tenant, services = await self._begin_service_job(tenant_id, company_id)
        job = DeployJob(tenant_id=tenant_id, kind=JobKind.ROLLBACK)
        self.runner.submit(job, lambda j: self._rollback(j, services), self._finalize)
        return {"status": TenantStatus.DEPLOYING.value, "job_id": job.id}

    def job(self, job_id: str) -> DeployJob | None:
        return self.runner.get(job_id)

    async def cancel(self, job_id: str) -> bool:
        return await self.runner.cancel(job_id)

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _require_configured(self) -> None:
        missing = self.config.deploy.missing()
        if missing:
            raise DeployNotConfiguredError(missing)

    async def _build_for(self, tenant: Tenant, build_id: str | None) -> GeneratedBuild:
        if build_id is not None:
            build = await self.records.get_build(build_id, tenant.company_id)
            if build is None or build.tenant_id != tenant.id:
                raise RecordNotFoundError(f"Build not found: {build_id}")
            return build
        build = await self.records.latest_build(tenant.id)
        if build is None:
            raise RecordNotFoundError(f"No build found for tenant {tenant.id}; generate a package first")
        return build

    async def _begin_service_job(
        self, tenant_id: str, company_id: str | None
    ) -> tuple[Tenant, dict[ServiceRole, str]]:
        tenant = await self.records.require_tenant(tenant_id, company_id)
        services = {r: sid for r, sid in tenant.service_ids.items() if r != ServiceRole.DATABASE}
        if not services:
            raise NotDeployedError(f"Tenant {tenant_id} has no deployed services")
        self._require_configured()
        await self.records.transition(
            tenant_id, {TenantStatus.GENERATED, TenantStatus.DEPLOYED}, TenantStatus.DEPLOYING
        )
        return tenant, services

    # ------------------------------------------------------------------
    # Job bodies
    # ------------------------------------------------------------------

    async def _provision(self, job: DeployJob, tenant: Tenant, build: GeneratedBuild) -> None:
        scratch = self.config.deploy_scratch_dir / job.id
        try:
            archive = await self.storage.fetch(build.storage_handle, scratch)
            source = scratch / "src"
            await asyncio.to_thread(_extract, archive, source)

            repo = await self.github.create_repo(tenant.slug, f"Build Factory: {tenant.name}")
            job.result["repo_url"] = repo.url
            await self.github.push(repo.full_name, source)

            await self._create_services(job, tenant.slug, build.products, repo.url)
            if job.errors:
                return
            await self._wait_until_live(job, job.result["service_ids"])
        finally:
            await asyncio.to_thread(shutil.rmtree, scratch, ignore_errors=True)

    async def _create_services(
        self, job: DeployJob, slug: str, products: list[Product], repo_url: str
    ) -> None:
        ids: dict[ServiceRole, str] = job.result.setdefault("service_ids", {})
        urls: dict[str, str] = job.result.setdefault("urls", {})

        if Product.CRM in products:
            await self._create_crm(job, slug, repo_url, ids, urls)

        if Product.WEBSITE in products:
            with_cms = Product.CMS in products
            build_command = "npm install"
            if with_cms:
                build_command += " && cd admin && npm install && npm run build"
            try:
                site = await self.render.create_web_service(
                    f"{slug}-site",
                    repo_url,
                    root_dir="website",
                    build_command=build_command,
                    start_command="npm start",
                    env_vars={
                        "NODE_ENV": "production",
                        "SESSION_SECRET": generate_secret(),
                        "CRM_API_URL": urls.get("api", ""),
                    },
                )
                ids[ServiceRole.SITE] = site["id"]
                urls["site"] = service_url(site)
            except DeploymentError as exc:
                job.errors["site"] = str(exc)
        elif Product.CMS in products:
            try:
                site = await self.render.create_static_site(
                    f"{slug}-cms", repo_url, root_dir="cms", publish_path="dist"
                )
                ids[ServiceRole.SITE] = site["id"]
                urls["site"] = service_url(site)
            except DeploymentError as exc:
                job.errors["site"] = str(exc)

    async def _create_crm(
        self,
        job: DeployJob,
        slug: str,
        repo_url: str,
        ids: dict[ServiceRole, str],
        urls: dict[str, str],
    ) -> None:
        try:
            database = await self.render.create_database(slug)
            ids[ServiceRole.DATABASE] = database["id"]
            database_url = await self._database_url(database["id"])
        except DeploymentError as exc:
            job.errors["database"] = str(exc)
            return

        backend_env = {
            "NODE_ENV": "production",
            "DATABASE_URL": database_url,
            "JWT_SECRET": generate_secret(),
            "JWT_REFRESH_SECRET": generate_secret(),
            "FRONTEND_URL": f"https://{slug}-crm.onrender.com",
        }
        try:
            backend = await self.render.create_web_service(
                f"{slug}-api",
                repo_url,
                root_dir="crm/backend",
                build_command="npm install && npx prisma generate && npx prisma migrate deploy",
                start_command="npm start",
                env_vars=backend_env,
            )
            ids[ServiceRole.BACKEND] = backend["id"]
            urls["api"] = service_url(backend)
        except DeploymentError as exc:
            job.errors["backend"] = str(exc)
            return

        try:
            frontend = await self.render.create_static_site(
                f"{slug}-crm",
                repo_url,
                root_dir="crm/frontend",
                publish_path="dist",
                env_vars={"VITE_API_URL": urls["api"]},
            )
            ids[ServiceRole.FRONTEND] = frontend["id"]
            urls["app"] = service_url(frontend)
        except DeploymentError as exc:
            job.errors["frontend"] = str(exc)
            return

        if urls["app"] != backend_env["FRONTEND_URL"]:
            backend_env["FRONTEND_URL"] = urls["app"]
            try:
                await self.render.update_env_vars(ids[ServiceRole.BACKEND], backend_env)
            except DeploymentError as exc:
                job.errors["wiring"] = str(exc)

    async def _database_url(self, database_id: str) -> str:
        deadline = time.monotonic() + self.config.deploy.poll_timeout
        while True:
            info = await self.render.database_connection_info(database_id)
            url = info.get("internalConnectionString") or info.get("externalConnectionString")
            if url:
                return url
            if time.monotonic() >= deadline:
                raise DeploymentError(f"Database {database_id} never reported a connection string")
            await self._sleep(self.config.deploy.poll_interval)

    async def _redeploy(self, job: DeployJob, services: dict[ServiceRole, str]) -> None:
        deploys: dict[str, str] = job.result.setdefault("deploys", {})
        for role, service_id in services.items():
            try:
                deploy = await self.render.trigger_deploy(service_id)
                deploys[role.value] = deploy.get("id", "")
            except DeploymentError as exc:
                job.errors[role.value] = str(exc)
        if not job.errors:
            await self._wait_until_live(job, services)

    async def _rollback(self, job: DeployJob, services: dict[ServiceRole, str]) -> None:
        targets: dict[str, str] = job.result.setdefault("rollback_to", {})
        for role, service_id in services.items():
            try:
                history = await self.render.list_deploys(service_id, limit=10)
                target = next(
                    (d for d in history[1:] if d.get("status") in ROLLBACK_TARGET_STATES),
                    None,
                )
                if target is None:
                    job.errors[role.value] = "no earlier successful deploy to roll back to"
                    continue
                await self.render.rollback(service_id, target["id"])
                targets[role.value] = target["id"]
            except DeploymentError as exc:
                job.errors[role.value] = str(exc)
        if not job.errors:
            await self._wait_until_live(job, services)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def _collect_health(self, service_ids: dict[ServiceRole, str]) -> dict[str, ServiceHealth]:
        health: dict[str, ServiceHealth] = {}
        for role, service_id in service_ids.items():
            try:
                if role == ServiceRole.DATABASE:
                    db = await self.render.get_database(service_id)
                    health[role.value] = ServiceHealth(
                        service_id=service_id, status=db.get("status", "unknown")
                    )
                    continue
                deploys = await self.render.list_deploys(service_id, limit=1)
                latest = deploys[0] if deploys else {}
                health[role.value] = ServiceHealth(
                    service_id=service_id,
                    status=latest.get("status", "unknown"),
                    finished_at=latest.get("finishedAt"),
                    commit=(latest.get("commit") or {}).get("message"),
                )
            except DeploymentError as exc:
                health[role.value] = ServiceHealth(service_id=service_id, status="error", error=str(exc))
        return health

    async def _wait_until_live(self, job: DeployJob, service_ids: dict[ServiceRole, str]) -> None:
        deadline = time.monotonic() + self.config.deploy.poll_timeout
        while True:
            health = await self._collect_health(service_ids)
            overall = aggregate_status([h.status for h in health.values()])
            if overall == "live":
                return
            if overall == "failed":
                for role, h in health.items():
                    if h.status in FAILED_STATES:
                        job.errors[role] = f"deploy {h.status}"
                raise DeploymentError("One or more services failed to deploy")
            if time.monotonic() >= deadline:
                pending = [r for r, h in health.items() if h.status not in LIVE_STATES]
                raise DeploymentError(f"Timed out waiting for services: {', '.join(pending)}")
            await self._sleep(self.config.deploy.poll_interval)

    # ------------------------------------------------------------------
    # Terminal write
    # ------------------------------------------------------------------

    async def _finalize(self, job: DeployJob) -> None:
        succeeded = job.status == JobStatus.SUCCEEDED
        ids: dict[ServiceRole, str] = job.result.get("service_ids", {})
        urls: dict[str, str] = job.result.get("urls", {})

        def mutate(tenant: Tenant) -> None:
            tenant.service_ids.update(ids)
            if job.result.get("repo_url"):
                tenant.repo_url = job.result["repo_url"]
            if succeeded:
                tenant.status = TenantStatus.DEPLOYED
                tenant.site_url = urls.get("site", tenant.site_url)
                tenant.api_url = urls.get("api", tenant.api_url)
                tenant.app_url = urls.get("app", tenant.app_url)
                tenant.last_errors = []
            else:
                tenant.status = TenantStatus.GENERATED
                tenant.last_errors = job.error_list()

        await self.records.update_tenant(job.tenant_id, mutate)
        if succeeded:
            logger.info("%s job %s: tenant %s deployed", job.kind.value, job.id, job.tenant_id)
        else:
            logger.error(
                "%s job %s for tenant %s ended %s: %s",
                job.kind.value, job.id, job.tenant_id, job.status.value,
                "; ".join(job.error_list()) or "no detail",
            )
