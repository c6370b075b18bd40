"""Async client for the Render REST API.

Covers the calls the deployment orchestrator needs: Postgres provisioning,
web service and static site creation, environment variables, deploy
listing, redeploy and rollback.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from buildfactory.config import DeployConfig
from buildfactory.errors import DeploymentError

logger = logging.getLogger(__name__)


def _unwrap(item: Any, key: str) -> dict[str, Any]:
    """Render list endpoints wrap each record as ``{"<key>": {...}, "cursor": ...}``."""
    if isinstance(item, dict) and isinstance(item.get(key), dict):
        return item[key]
    return item if isinstance(item, dict) else {}


def service_url(service: dict[str, Any]) -> str:
    """Public URL of a Render service record."""
    details = service.get("serviceDetails") or {}
    url = details.get("url")
    if url:
        return url
    return f"https://{service.get('name', '')}.onrender.com"


class RenderClient:
    """Thin wrapper over ``https://api.render.com/v1``."""

    def __init__(self, config: DeployConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.config = config
        self.base_url = config.render_api_url.rstrip("/")
        self._transport = transport

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.config.http_timeout, connect=10.0),
            headers={
                "Authorization": f"Bearer {self.config.render_api_key}",
                "Accept": "application/json",
            },
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise DeploymentError(f"Render request timed out: {method} {path}") from exc
        except httpx.HTTPError as exc:
            raise DeploymentError(f"Render request failed: {method} {path}: {exc}") from exc

    async def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._request(method, path, **kwargs)
        if response.status_code >= 400:
            raise DeploymentError(
                f"Render returned HTTP {response.status_code} for {method} {path}: {response.text[:500]}",
                status_code=response.status_code,
            )
        if not response.content:
            return {}
        return response.json()

    # ------------------------------------------------------------------
    # Postgres
    # ------------------------------------------------------------------

    async def find_database(self, name: str) -> dict[str, Any] | None:
        items = await self._call("GET", "/postgres", params={"name": name, "limit": 20})
        for item in items if isinstance(items, list) else []:
            db = _unwrap(item, "postgres")
            if db.get("name") == name:
                return db
        return None

    async def create_database(self, slug: str) -> dict[str, Any]:
        """Create ``<slug>-db``, reusing an existing database of that name."""
        name = f"{slug}-db"
        db_ident = slug.replace("-", "_")
        payload = {
            "name": name,
            "databaseName": db_ident,
            "databaseUser": db_ident,
            "ownerId": self.config.render_owner_id,
            "plan": self.config.plan,
            "region": self.config.region,
            "version": self.config.database_version,
        }
        response = await self._request("POST", "/postgres", json=payload)
        if response.status_code < 400:
            return response.json()

        body = response.text
        if response.status_code in (400, 409) or "already" in body or "exists" in body:
            existing = await self.find_database(name)
            if existing is not None:
                logger.info("Database %s already exists; reusing %s", name, existing.get("id"))
                return existing
        raise DeploymentError(
            f"Render database creation failed ({response.status_code}): {body[:500]}",
            status_code=response.status_code,
        )

    async def get_database(self, database_id: str) -> dict[str, Any]:
        return await self._call("GET", f"/postgres/{database_id}")

    async def database_connection_info(self, database_id: str) -> dict[str, Any]:
        return await self._call("GET", f"/postgres/{database_id}/connection-info")

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    async def create_web_service(
        self,
        name: str,
        repo_url: str,
        *,
        root_dir: str = "",
        build_command: str = "npm install",
        start_command: str = "npm start",
        env_vars: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        payload = {
            "type": "web_service",
            "name": name,
            "ownerId": self.config.render_owner_id,
            "repo": repo_url,
            "autoDeploy": "yes",
            "branch": "main",
            "rootDir": root_dir,
            "serviceDetails": {
                "envSpecificDetails": {
                    "buildCommand": build_command,
                    "startCommand": start_command,
                },
                "plan": self.config.plan,
                "region": self.config.region,
                "runtime": "node",
                "numInstances": 1,
            },
            "envVars": _env_list(env_vars),
        }
        data = await self._call("POST", "/services", json=payload)
        return _unwrap(data, "service")

    async def create_static_site(
        self,
        name: str,
        repo_url: str,
        *,
        root_dir: str = "",
        build_command: str = "npm install && npm run build",
        publish_path: str = "dist",
        env_vars: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        payload = {
            "type": "static_site",
            "name": name,
            "ownerId": self.config.render_owner_id,
            "repo": repo_url,
            "autoDeploy": "yes",
            "branch": "main",
            "rootDir": root_dir,
            "serviceDetails": {
                "buildCommand": build_command,
                "publishPath": publish_path,
            },
            "envVars": _env_list(env_vars),
        }
        data = await self._call("POST", "/services", json=payload)
        return _unwrap(data, "service")

    async def get_service(self, service_id: str) -> dict[str, Any]:
        return await self._call("GET", f"/services/{service_id}")

    async def update_env_vars(self, service_id: str, env_vars: dict[str, str]) -> None:
        """Replace the service's environment variables."""
        await self._call("PUT", f"/services/{service_id}/env-vars", json=_env_list(env_vars))

    # ------------------------------------------------------------------
    # Deploys
    # ------------------------------------------------------------------

    async def list_deploys(self, service_id: str, limit: int = 5) -> list[dict[str, Any]]:
        """Most recent deploys first."""
        items = await self._call("GET", f"/services/{service_id}/deploys", params={"limit": limit})
        return [_unwrap(item, "deploy") for item in items] if isinstance(items, list) else []

    async def trigger_deploy(self, service_id: str) -> dict[str, Any]:
        return await self._call("POST", f"/services/{service_id}/deploys", json={})

    async def rollback(self, service_id: str, deploy_id: str) -> dict[str, Any]:
        return await self._call("POST", f"/services/{service_id}/rollback", json={"deployId": deploy_id})


def _env_list(env_vars: dict[str, str] | None) -> list[dict[str, str]]:
    return [{"key": key, "value": value} for key, value in (env_vars or {}).items()]
