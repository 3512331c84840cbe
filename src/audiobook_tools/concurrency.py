"""Disk space checks run before any job is scheduled."""

import shutil
from pathlib import Path

from loguru import logger

log = logger.bind(stage="concurrency")


def _existing_parent(path: Path) -> Path:
    """Nearest existing directory at or above ``path``."""
    for candidate in (path, *path.parents):
        if candidate.exists():
            return candidate if candidate.is_dir() else candidate.parent
    return Path.cwd()


def required_bytes(sources: list[Path], multiplier: int = 2) -> int:
    """Space needed to write outputs for ``sources``."""
    total = 0
    for src in sources:
        if src.is_file():
            total += src.stat().st_size
        elif src.is_dir():
            total += sum(f.stat().st_size for f in src.rglob("*") if f.is_file())
    return total * multiplier


def check_disk_space(source_path: Path | list[Path], dest_dir: Path, multiplier: int = 2) -> bool:
    """Check that dest_dir has enough free space.

    Requires at least multiplier * total source size available on the
    filesystem holding ``dest_dir`` (which need not exist yet).
    Returns True if sufficient, False otherwise.
    """
    sources = source_path if isinstance(source_path, list) else [source_path]
    required = required_bytes(sources, multiplier)
    usage = shutil.disk_usage(_existing_parent(dest_dir))
    result = usage.free >= required

    log.debug(
        f"Disk space check: required={required:,} bytes, "
        f"free={usage.free:,} bytes, sufficient={result}"
    )
    return result
