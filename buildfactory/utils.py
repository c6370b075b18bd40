"""Shared utility functions for the Build Factory.

Provides name helpers, JSON I/O, file-system helpers, secret generation,
logging setup, and Rich-based console reporting.  Every public function is
designed to be safe and side-effect-free where possible, with clear error
messages when something goes wrong.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import secrets
import stat
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

console = Console()

# Directory and file names never copied into, or searched inside, a workspace.
SKIP_NAMES: frozenset[str] = frozenset(
    {"node_modules", ".git", "package-lock.json", ".DS_Store"}
)

_PASSWORD_ALPHABET = "abcdefghijkmnpqrstuvwxyzABCDEFGHJKLMNPQRSTUVWXYZ23456789"


# ---------------------------------------------------------------------------
# String / name helpers
# ---------------------------------------------------------------------------


def slugify(name: str, default: str = "company") -> str:
    """Convert an arbitrary company name to a URL/filename-safe slug.

    Examples::

        slugify("Acme Roofing & Sons") -> "acme-roofing-sons"
        slugify("  ") -> "company"
    """
    slug = re.sub(r"[^a-z0-9]+", "-", (name or "").lower()).strip("-")
    return slug or default


def pascal_case(name: str) -> str:
    """Convert ``"acme roofing-co"`` to ``"AcmeRoofingCo"``."""
    parts = re.split(r"[^a-zA-Z0-9]+", name or "")
    return "".join(word[:1].upper() + word[1:].lower() for word in parts if word)


def camel_case(name: str) -> str:
    """Convert ``"time-tracking"`` or ``"time_tracking"`` to ``"timeTracking"``."""
    pascal = pascal_case(name)
    return pascal[:1].lower() + pascal[1:] if pascal else ""


def kebab_case(name: str) -> str:
    """Convert ``"timeTracking"`` or ``"time_tracking"`` to ``"time-tracking"``."""
    s1 = re.sub(r"([a-z0-9])([A-Z])", r"\1-\2", name)
    return re.sub(r"[^a-zA-Z0-9]+", "-", s1).strip("-").lower()


# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------


def generate_password(length: int = 12) -> str:
    """Return a random password without look-alike characters (0/O, 1/l)."""
    return "".join(secrets.choice(_PASSWORD_ALPHABET) for _ in range(length))


def generate_secret(num_bytes: int = 32) -> str:
    """Return a random hex secret suitable for JWT signing keys."""
    return secrets.token_hex(num_bytes)


# ---------------------------------------------------------------------------
# JSON I/O
# ---------------------------------------------------------------------------


def load_json(path: str | Path) -> Any:
    """Load and parse a JSON file.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
    """
    return json.loads(Path(path).read_text(encoding="utf-8"))


def write_json(data: Any, path: str | Path) -> None:
    """Write *data* as pretty-printed JSON, atomically replacing *path*.

    The payload is written to a sibling temp file first so readers never
    observe a half-written record.
    """
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    content = json.dumps(data, indent=2, ensure_ascii=False, default=str)
    tmp = file_path.with_name(f".{file_path.name}.{secrets.token_hex(4)}.tmp")
    tmp.write_text(content + "\n", encoding="utf-8")
    os.replace(tmp, file_path)


async def save_json(data: Any, path: str | Path) -> None:
    """Async wrapper around :func:`write_json` that runs in a worker thread."""
    await asyncio.to_thread(write_json, data, path)


# ---------------------------------------------------------------------------
# File-system helpers
# ---------------------------------------------------------------------------


def iter_files(root: Path, predicate: Callable[[Path], bool] | None = None) -> Iterator[Path]:
    """Yield files under *root* in sorted order, skipping :data:`SKIP_NAMES`.

    Args:
        root: Directory to walk.  A missing directory yields nothing.
        predicate: Optional filter applied to each file path.
    """
    if not root.is_dir():
        return
    for entry in sorted(root.iterdir(), key=lambda p: p.name):
        if entry.name in SKIP_NAMES:
            continue
        if entry.is_dir():
            yield from iter_files(entry, predicate)
        elif entry.is_file() and (predicate is None or predicate(entry)):
            yield entry


def make_executable(path: Path) -> None:
    """Set the executable bit on a file for user, group and others."""
    current = path.stat().st_mode
    path.chmod(current | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def format_duration(seconds: float) -> str:
    """Render a build duration for log lines: ``3.7s``, ``1m 5s`` or ``1h 1m 1s``."""
    if seconds < 60:
        return f"{max(seconds, 0.0):.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    return f"{minutes}m {secs}s"


# ---------------------------------------------------------------------------
# Logging & Rich output helpers
# ---------------------------------------------------------------------------


def configure_logging(level: int | str = logging.INFO) -> None:
    """Route ``logging`` records through Rich for CLI runs."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def print_summary_table(data: dict[str, Any], title: str = "Summary") -> None:
    """Print a two-column key/value summary table."""
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Item", style="dim", no_wrap=True)
    table.add_column("Value")

    for key, value in data.items():
        table.add_row(key, str(value))

    console.print(table)
    console.print()


def print_success(message: str) -> None:
    """Print a green success message."""
    console.print(f"[bold green]{message}[/bold green]")


def print_error(message: str) -> None:
    """Print a red error message."""
    console.print(f"[bold red]{message}[/bold red]")


def print_warning(message: str) -> None:
    """Print a yellow warning message."""
    console.print(f"[bold yellow]{message}[/bold yellow]")
