"""Exception taxonomy for the build and deployment pipeline.

Every error carries a ``retryable`` flag so the calling layer can tell
"retry is safe" (template, assembly, storage problems) apart from "fix the
configuration and retry" (configuration and resolver problems).
"""

from __future__ import annotations

from pathlib import Path


class FactoryError(Exception):
    """Base class for all pipeline errors."""

    retryable: bool = False


class ConfigurationError(FactoryError):
    """The build configuration was rejected before any workspace existed."""


class TemplateError(FactoryError):
    """A template tree is missing or could not be rendered."""

    retryable = True

    def __init__(self, message: str, product: str = "") -> None:
        self.product = product
        super().__init__(message)


class ResolverError(FactoryError):
    """The feature selection does not match the product's manifest."""

    def __init__(self, message: str, unknown: list[str] | None = None) -> None:
        self.unknown = unknown or []
        super().__init__(message)


class RecordNotFoundError(FactoryError):
    """A build or tenant does not exist, or belongs to another company."""


class AssemblyError(FactoryError):
    """The workspace could not be packaged into an archive."""

    retryable = True


class StorageError(FactoryError):
    """An archive could not be stored or retrieved.

    ``archive_path`` points at the local archive that was preserved so the
    build is not lost.
    """

    retryable = True

    def __init__(self, message: str, archive_path: Path | None = None) -> None:
        self.archive_path = archive_path
        super().__init__(message)


class DeploymentError(FactoryError):
    """A remote source-control or platform operation failed."""

    retryable = True

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class DeployNotConfiguredError(DeploymentError):
    """Deployment credentials are missing from the process configuration."""

    retryable = False

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"Deploy not configured; missing: {', '.join(missing)}")


class DeploymentConflictError(DeploymentError):
    """The tenant is already being deployed."""

    retryable = False


class NotDeployedError(DeploymentError):
    """The tenant has no recorded remote services to act on."""

    retryable = False
