"""JSON-file persistence for tenants and generated builds.

One file per record under ``<data_dir>/tenants`` and ``<data_dir>/builds``.
Writes go through a temp file and an atomic replace.  Tenant mutations are
serialised by a per-tenant ``asyncio.Lock`` so a status change is a true
compare-and-set.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable, Iterable
from pathlib import Path

from buildfactory.config import Config
from buildfactory.errors import DeploymentConflictError, RecordNotFoundError
from buildfactory.models import GeneratedBuild, Tenant, TenantStatus
from buildfactory.utils import save_json

logger = logging.getLogger(__name__)


class RecordStore:
    """Reads and writes ``Tenant`` and ``GeneratedBuild`` records."""

    def __init__(self, tenants_dir: Path, builds_dir: Path) -> None:
        self.tenants_dir = Path(tenants_dir)
        self.builds_dir = Path(builds_dir)
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @classmethod
    def from_config(cls, config: Config) -> "RecordStore":
        return cls(config.tenants_dir, config.builds_dir)

    # -- Tenants -----------------------------------------------------------

    async def get_tenant(self, tenant_id: str) -> Tenant | None:
        return await asyncio.to_thread(_read, self._tenant_path(tenant_id), Tenant)

    async def require_tenant(self, tenant_id: str, company_id: str | None = None) -> Tenant:
        """Return the tenant, scoped to *company_id* when given.

        Raises:
            RecordNotFoundError: If the tenant is missing or owned by another company.
        """
        tenant = await self.get_tenant(tenant_id)
        if tenant is None or (company_id is not None and tenant.company_id != company_id):
            raise RecordNotFoundError(f"Tenant not found: {tenant_id}")
        return tenant

    async def save_tenant(self, tenant: Tenant) -> Tenant:
        async with self._locks[tenant.id]:
            tenant.touch()
            await save_json(tenant.model_dump(mode="json"), self._tenant_path(tenant.id))
        return tenant

    async def update_tenant(self, tenant_id: str, mutate: Callable[[Tenant], None]) -> Tenant:
        """Load, mutate and save a tenant under its lock."""
        async with self._locks[tenant_id]:
            tenant = await self.require_tenant(tenant_id)
            mutate(tenant)
            tenant.touch()
            await save_json(tenant.model_dump(mode="json"), self._tenant_path(tenant_id))
            return tenant

    async def transition(
        self,
        tenant_id: str,
        allowed_from: Iterable[TenantStatus],
        to: TenantStatus,
    ) -> Tenant:
        """Move a tenant to *to* only if its current status is in *allowed_from*.

        Raises:
            DeploymentConflictError: If the current status is not allowed.
        """
        allowed = set(allowed_from)
        async with self._locks[tenant_id]:
            tenant = await self.require_tenant(tenant_id)
            if tenant.status not in allowed:
                raise DeploymentConflictError(
                    f"Tenant {tenant_id} is {tenant.status.value}; cannot move to {to.value}"
                )
            tenant.status = to
            tenant.touch()
            await save_json(tenant.model_dump(mode="json"), self._tenant_path(tenant_id))
            logger.info("Tenant %s -> %s", tenant_id, to.value)
            return tenant

    async def list_tenants(self, company_id: str | None = None) -> list[Tenant]:
        tenants = await asyncio.to_thread(_read_all, self.tenants_dir, Tenant)
        return [t for t in tenants if company_id is None or t.company_id == company_id]

    # -- Builds ------------------------------------------------------------

    async def get_build(self, build_id: str, company_id: str | None = None) -> GeneratedBuild | None:
        build = await asyncio.to_thread(_read, self._build_path(build_id), GeneratedBuild)
        if build is not None and company_id is not None and build.company_id != company_id:
            return None
        return build

    async def save_build(self, build: GeneratedBuild) -> GeneratedBuild:
        await save_json(build.model_dump(mode="json"), self._build_path(build.build_id))
        return build

    async def delete_build(self, build_id: str) -> None:
        await asyncio.to_thread(self._build_path(build_id).unlink, missing_ok=True)

    async def list_builds(self, tenant_id: str | None = None) -> list[GeneratedBuild]:
        builds = await asyncio.to_thread(_read_all, self.builds_dir, GeneratedBuild)
        builds = [b for b in builds if tenant_id is None or b.tenant_id == tenant_id]
        return sorted(builds, key=lambda b: b.created_at)

    async def latest_build(self, tenant_id: str) -> GeneratedBuild | None:
        builds = await self.list_builds(tenant_id)
        return builds[-1] if builds else None

    # -- Paths -------------------------------------------------------------

    def _tenant_path(self, tenant_id: str) -> Path:
        return self.tenants_dir / f"{_safe_id(tenant_id)}.json"

    def _build_path(self, build_id: str) -> Path:
        return self.builds_dir / f"{_safe_id(build_id)}.json"


def _safe_id(record_id: str) -> str:
    if not record_id or "/" in record_id or "\\" in record_id or record_id.startswith("."):
        raise RecordNotFoundError(f"Invalid record id: {record_id!r}")
    return record_id


def _read(path: Path, model: type):
    if not path.is_file():
        return None
    return model.model_validate_json(path.read_text(encoding="utf-8"))


def _read_all(directory: Path, model: type) -> list:
    if not directory.is_dir():
        return []
    return [
        model.model_validate_json(p.read_text(encoding="utf-8"))
        for p in sorted(directory.glob("*.json"))
    ]
