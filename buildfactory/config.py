"""Build Factory configuration.

Centralised, typed configuration for the generation and deployment pipeline.
All settings use Pydantic v2 models so they can be validated at construction
time and serialised to/from JSON or environment variables without
boiler-plate.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field


class StorageConfig(BaseModel):
    """Where finished archives are kept.

    ``local`` keeps the archive in the output directory and is only allowed
    outside production. ``s3`` uploads to any S3-compatible bucket (AWS S3,
    Cloudflare R2, MinIO).
    """

    backend: Literal["local", "s3"] = Field(default="local")
    bucket: str = Field(default="")
    region: str = Field(default="auto")
    endpoint_url: str | None = Field(default=None)
    access_key: str | None = Field(default=None)
    secret_key: str | None = Field(default=None)
    key_prefix: str = Field(default="builds")
    url_expiry: int = Field(
        default=3600, ge=60, description="Signed download URL lifetime in seconds"
    )


class DeployConfig(BaseModel):
    """Credentials and tuning for the GitHub + Render deployment flow."""

    render_api_url: str = Field(default="https://api.render.com/v1")
    render_api_key: str = Field(default="")
    render_owner_id: str = Field(default="")
    github_api_url: str = Field(default="https://api.github.com")
    github_token: str = Field(default="")
    github_org: str = Field(default="")
    region: str = Field(default="ohio")
    plan: str = Field(default="free")
    database_version: str = Field(default="16")
    http_timeout: int = Field(default=30, ge=1, description="Per-request timeout in seconds")
    git_timeout: int = Field(default=120, ge=10, description="Timeout for each git command")
    poll_interval: float = Field(default=8.0, gt=0, description="Seconds between health polls")
    poll_timeout: float = Field(
        default=600.0, gt=0, description="Seconds to wait for services to become live"
    )

    def missing(self) -> list[str]:
        """Return the names of required settings that are not set."""
        required = {
            "RENDER_API_KEY": self.render_api_key,
            "RENDER_OWNER_ID": self.render_owner_id,
            "GITHUB_TOKEN": self.github_token,
            "GITHUB_ORG": self.github_org,
        }
        return [name for name, value in required.items() if not value]

    def is_configured(self) -> bool:
        """Return ``True`` when every credential needed to deploy is present."""
        return not self.missing()


class Config(BaseModel):
    """Global Build Factory configuration.

    Holds every tuneable parameter and derived path used by the pipeline.
    Instances are typically created once by ``Factory`` or by the CLI entry
    point and then passed through the rest of the system.
    """

    templates_dir: Path = Field(default=Path("./templates"))
    output_dir: Path = Field(default=Path("./generated"))
    data_dir: Path = Field(default=Path("./data"))
    production: bool = Field(default=False)
    strict_tokens: bool = Field(
        default=False, description="Fail builds that leave unknown {{TOKENS}} behind"
    )
    compression_level: int = Field(default=6, ge=0, le=9)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    deploy: DeployConfig = Field(default_factory=DeployConfig)

    # ------------------------------------------------------------------
    # Derived paths (read-only properties)
    # ------------------------------------------------------------------

    @property
    def tenants_dir(self) -> Path:
        """Directory holding one JSON record per tenant."""
        return self.data_dir / "tenants"

    @property
    def builds_dir(self) -> Path:
        """Directory holding one JSON record per generated build."""
        return self.data_dir / "builds"

    @property
    def deploy_scratch_dir(self) -> Path:
        """Scratch space where archives are extracted before a push."""
        return self.output_dir / ".deploy"

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    def save(self, path: Path | None = None) -> Path:
        """Persist the configuration to a JSON file.

        Args:
            path: Destination file. Defaults to ``<data_dir>/config.json``.

        Returns:
            The resolved path where the file was written.
        """
        target = path or (self.data_dir / "config.json")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        return target

    @classmethod
    def load(cls, path: Path) -> "Config":
        """Load a previously-saved configuration from JSON."""
        raw = Path(path).read_text(encoding="utf-8")
        return cls.model_validate_json(raw)

    @classmethod
    def from_env(cls) -> "Config":
        """Build a ``Config`` from environment variables.

        Recognised variables (all optional):
            FACTORY_TEMPLATES_DIR, FACTORY_OUTPUT_DIR, FACTORY_DATA_DIR,
            FACTORY_ENV (``production`` enables production mode),
            FACTORY_STRICT_TOKENS, FACTORY_STORAGE (``local`` or ``s3``),
            S3_BUCKET, S3_REGION, S3_ENDPOINT_URL, AWS_ACCESS_KEY_ID,
            AWS_SECRET_ACCESS_KEY, S3_URL_EXPIRY,
            RENDER_API_KEY, RENDER_OWNER_ID, GITHUB_TOKEN, GITHUB_ORG,
            DEPLOY_REGION, DEPLOY_PLAN, DEPLOY_POLL_TIMEOUT.
        """
        production = os.environ.get("FACTORY_ENV", "").lower() == "production"

        storage_kwargs: dict[str, Any] = {
            "backend": os.environ.get("FACTORY_STORAGE", "s3" if production else "local"),
        }
        if os.environ.get("S3_BUCKET"):
            storage_kwargs["bucket"] = os.environ["S3_BUCKET"]
        if os.environ.get("S3_REGION"):
            storage_kwargs["region"] = os.environ["S3_REGION"]
        if os.environ.get("S3_ENDPOINT_URL"):
            storage_kwargs["endpoint_url"] = os.environ["S3_ENDPOINT_URL"]
        if os.environ.get("AWS_ACCESS_KEY_ID"):
            storage_kwargs["access_key"] = os.environ["AWS_ACCESS_KEY_ID"]
        if os.environ.get("AWS_SECRET_ACCESS_KEY"):
            storage_kwargs["secret_key"] = os.environ["AWS_SECRET_ACCESS_KEY"]
        if os.environ.get("S3_URL_EXPIRY"):
            storage_kwargs["url_expiry"] = int(os.environ["S3_URL_EXPIRY"])

        deploy_kwargs: dict[str, Any] = {
            "render_api_key": os.environ.get("RENDER_API_KEY", ""),
            "render_owner_id": os.environ.get("RENDER_OWNER_ID", ""),
            "github_token": os.environ.get("GITHUB_TOKEN", ""),
            "github_org": os.environ.get("GITHUB_ORG", ""),
        }
        if os.environ.get("DEPLOY_REGION"):
            deploy_kwargs["region"] = os.environ["DEPLOY_REGION"]
        if os.environ.get("DEPLOY_PLAN"):
            deploy_kwargs["plan"] = os.environ["DEPLOY_PLAN"]
        if os.environ.get("DEPLOY_POLL_TIMEOUT"):
            deploy_kwargs["poll_timeout"] = float(os.environ["DEPLOY_POLL_TIMEOUT"])

        return cls(
            templates_dir=Path(os.environ.get("FACTORY_TEMPLATES_DIR", "./templates")),
            output_dir=Path(os.environ.get("FACTORY_OUTPUT_DIR", "./generated")),
            data_dir=Path(os.environ.get("FACTORY_DATA_DIR", "./data")),
            production=production,
            strict_tokens=os.environ.get("FACTORY_STRICT_TOKENS", "").lower() in ("1", "true", "yes"),
            storage=StorageConfig(**storage_kwargs),
            deploy=DeployConfig(**deploy_kwargs),
        )

    def ensure_directories(self) -> None:
        """Create all derived directories that must exist before a build runs."""
        for directory in (
            self.output_dir,
            self.data_dir,
            self.tenants_dir,
            self.builds_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)
