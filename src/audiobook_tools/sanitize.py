"""Filename and chapter-title sanitization."""

import re
from pathlib import Path

from loguru import logger

log = logger.bind(stage="sanitize")

_UNSAFE = r'[/\\:"*?<>|;]+'


def sanitize_filename(filename: str) -> str:
    """Sanitize a filename component (not a full path).

    Replaces unsafe chars with underscores, strips leading/trailing dots,
    collapses repeated underscores, truncates to 255 bytes keeping the
    extension.
    """
    sanitized = re.sub(_UNSAFE, "_", filename)
    sanitized = re.sub(r"^[._ ]+", "", sanitized)
    sanitized = re.sub(r"[._ ]+$", "", sanitized)
    sanitized = re.sub(r"__+", "_", sanitized)

    if len(sanitized.encode("utf-8")) > 255:
        p = Path(sanitized)
        ext = p.suffix
        stem = p.stem if ext else sanitized
        while len((stem + ext).encode("utf-8")) > 255 and stem:
            stem = stem[:-1]
        log.debug(f"Truncated long filename: '{filename[:40]}...'")
        sanitized = stem + ext

    return sanitized


def sanitize_chapter_title(title: str) -> str:
    """Sanitize a chapter title (more permissive -- uses spaces)."""
    sanitized = re.sub(_UNSAFE, " ", title)
    sanitized = re.sub(r"\s+", " ", sanitized)
    return sanitized.strip()


def clean_chapter_name(stem: str) -> str:
    """Turn a chapter file stem into title text.

    Separator runs (``_``/``-``) become spaces and digits are dropped, so
    ``01_The-Beginning`` becomes ``The Beginning``.
    """
    cleaned = re.sub(r"[_-]+", " ", stem)
    cleaned = re.sub(r"\d+", "", cleaned)
    return sanitize_chapter_title(cleaned)
