"""Storage adapter for finished build archives.

Two backends share one interface:

* ``S3StorageBackend`` uploads to any S3-compatible bucket (AWS S3,
  Cloudflare R2, MinIO).  The handle is the object key, the local archive
  is removed after upload, and ``resolve`` hands out presigned URLs.
* ``LocalStorageBackend`` keeps the archive where it was written.  The
  handle is the file path.  Refused in production.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from buildfactory.config import Config, StorageConfig
from buildfactory.errors import ConfigurationError, StorageError
from buildfactory.models import StorageBackendKind

logger = logging.getLogger(__name__)


class StorageBackend(ABC):
    """Interface every archive store implements."""

    kind: StorageBackendKind

    @abstractmethod
    async def store(self, archive_path: Path) -> str:
        """Persist the archive and return an opaque handle."""

    @abstractmethod
    async def resolve(self, handle: str) -> str | None:
        """Return a retrievable location for *handle*, or ``None`` if it is gone."""

    @abstractmethod
    async def discard(self, handle: str) -> None:
        """Remove the archive.  Discarding a missing handle is a no-op."""

    @abstractmethod
    async def fetch(self, handle: str, dest_dir: Path) -> Path:
        """Make the archive available as a local file under *dest_dir*."""


# =============================================================================
# Local Storage Backend
# =============================================================================


class LocalStorageBackend(StorageBackend):
    """Archives stay on the local disk where the assembler wrote them."""

    kind = StorageBackendKind.LOCAL

    async def store(self, archive_path: Path) -> str:
        if not archive_path.is_file():
            raise StorageError(f"Archive not found: {archive_path}", archive_path=archive_path)
        return str(archive_path.resolve())

    async def resolve(self, handle: str) -> str | None:
        path = Path(handle)
        return str(path) if path.is_file() else None

    async def discard(self, handle: str) -> None:
        Path(handle).unlink(missing_ok=True)

    async def fetch(self, handle: str, dest_dir: Path) -> Path:
        source = Path(handle)
        if not source.is_file():
            raise StorageError(f"Archive no longer exists: {handle}")
        dest_dir.mkdir(parents=True, exist_ok=True)
        target = dest_dir / source.name
        await asyncio.to_thread(shutil.copyfile, source, target)
        return target


# =============================================================================
# S3 Storage Backend
# =============================================================================


class S3StorageBackend(StorageBackend):
    """S3-compatible object storage."""

    kind = StorageBackendKind.S3

    def __init__(self, config: StorageConfig, session: Any | None = None) -> None:
        if not config.bucket:
            raise ConfigurationError("S3 storage requires a bucket name")
        self.config = config
        self.session = session or aioboto3.Session()

    def _client_config(self) -> dict[str, str]:
        client: dict[str, str] = {"region_name": self.config.region}
        if self.config.endpoint_url:
            client["endpoint_url"] = self.config.endpoint_url
        if self.config.access_key:
            client["aws_access_key_id"] = self.config.access_key
        if self.config.secret_key:
            client["aws_secret_access_key"] = self.config.secret_key
        return client

    def key_for(self, archive_path: Path) -> str:
        prefix = self.config.key_prefix.strip("/")
        return f"{prefix}/{archive_path.name}" if prefix else archive_path.name

    async def store(self, archive_path: Path) -> str:
        key = self.key_for(archive_path)
        try:
            body = await asyncio.to_thread(archive_path.read_bytes)
            async with self.session.client("s3", **self._client_config()) as s3:
                await s3.put_object(
                    Bucket=self.config.bucket,
                    Key=key,
                    Body=body,
                    ContentType="application/zip",
                )
        except (BotoCoreError, ClientError, OSError) as exc:
            raise StorageError(
                f"Upload of {archive_path.name} failed; archive kept at {archive_path}: {exc}",
                archive_path=archive_path,
            ) from exc

        archive_path.unlink(missing_ok=True)
        logger.info("Uploaded %s to s3://%s/%s", archive_path.name, self.config.bucket, key)
        return key

    async def resolve(self, handle: str) -> str | None:
        try:
            async with self.session.client("s3", **self._client_config()) as s3:
                await s3.head_object(Bucket=self.config.bucket, Key=handle)
                url: str = await s3.generate_presigned_url(
                    "get_object",
                    Params={"Bucket": self.config.bucket, "Key": handle},
                    ExpiresIn=self.config.url_expiry,
                )
                return url
        except ClientError as exc:
            if _is_not_found(exc):
                return None
            raise StorageError(f"Could not resolve {handle}: {exc}") from exc

    async def discard(self, handle: str) -> None:
        try:
            async with self.session.client("s3", **self._client_config()) as s3:
                await s3.delete_object(Bucket=self.config.bucket, Key=handle)
        except ClientError as exc:
            if not _is_not_found(exc):
                raise StorageError(f"Could not delete {handle}: {exc}") from exc

    async def fetch(self, handle: str, dest_dir: Path) -> Path:
        dest_dir.mkdir(parents=True, exist_ok=True)
        target = dest_dir / Path(handle).name
        try:
            async with self.session.client("s3", **self._client_config()) as s3:
                response = await s3.get_object(Bucket=self.config.bucket, Key=handle)
                async with response["Body"] as stream:
                    data: bytes = await stream.read()
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Could not download {handle}: {exc}") from exc
        await asyncio.to_thread(target.write_bytes, data)
        return target


def _is_not_found(exc: ClientError) -> bool:
    code = str(exc.response.get("Error", {}).get("Code", ""))
    return code in {"404", "NoSuchKey", "NotFound"}


def get_storage_backend(config: Config) -> StorageBackend:
    """Select the storage backend named by the configuration."""
    if config.storage.backend == "s3":
        return S3StorageBackend(config.storage)
    if config.production:
        raise ConfigurationError("Local archive storage is not allowed in production")
    return LocalStorageBackend()
