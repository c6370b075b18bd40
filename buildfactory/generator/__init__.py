"""Package generation: token rendering, feature resolution, asset injection
and archive assembly."""

from buildfactory.generator.generator import PackageGenerator, validate_build_config
from buildfactory.generator.store import FileSystemTemplateStore, TemplateStore

__all__ = [
    "FileSystemTemplateStore",
    "PackageGenerator",
    "TemplateStore",
    "validate_build_config",
]
