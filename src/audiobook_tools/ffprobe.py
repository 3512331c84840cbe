"""FFprobe subprocess wrappers for audio file inspection."""

import json
import subprocess
from pathlib import Path

from loguru import logger

from .models import BookMetadata

log = logger.bind(stage="ffprobe")

_ffprobe_bin = "ffprobe"


def configure(binary: str) -> None:
    """Point all wrappers at a specific ffprobe executable."""
    global _ffprobe_bin
    _ffprobe_bin = binary


def _run_ffprobe(args: list[str]) -> subprocess.CompletedProcess:
    """Run ffprobe with common flags."""
    return subprocess.run(
        [_ffprobe_bin, "-v", "error"] + args,
        capture_output=True,
        text=True,
    )


def get_duration(file: Path) -> float:
    """Get duration in seconds."""
    result = _run_ffprobe([
        "-show_entries", "format=duration",
        "-of", "default=noprint_wrappers=1:nokey=1",
        str(file),
    ])
    output = result.stdout.strip()
    if not output or output == "N/A":
        raise ValueError(f"ffprobe returned empty duration for {file}")
    return float(output)


def get_bitrate(file: Path) -> int:
    """Get bitrate in bits/sec."""
    result = _run_ffprobe([
        "-show_entries", "format=bit_rate",
        "-of", "default=noprint_wrappers=1:nokey=1",
        str(file),
    ])
    output = result.stdout.strip()
    if not output or output == "N/A":
        raise ValueError(f"ffprobe returned empty bitrate for {file}")
    return int(output)


def duration_to_timestamp(seconds: float) -> str:
    """Convert seconds to HH:MM:SS."""
    total = int(seconds)
    h = total // 3600
    m = (total % 3600) // 60
    s = total % 60
    return f"{h:02d}:{m:02d}:{s:02d}"


def get_tags(file: Path) -> dict:
    """Get format-level metadata tags from an audio file.

    Returns dict with lowercase keys. Common keys: artist, album_artist,
    title, album, genre, date, comment. Empty when ffprobe is missing or fails.
    """
    try:
        result = _run_ffprobe([
            "-show_entries", "format_tags", "-of", "json", str(file),
        ])
    except OSError as e:
        log.warning(f"ffprobe unavailable, no tags for {file.name}: {e}")
        return {}
    if result.returncode != 0:
        return {}
    try:
        data = json.loads(result.stdout)
        raw = data.get("format", {}).get("tags", {})
        return {k.lower(): v for k, v in raw.items()}
    except (json.JSONDecodeError, AttributeError):
        return {}


def count_chapters(file: Path) -> int:
    """Count embedded chapters in an audio file (0 when it cannot be probed)."""
    try:
        result = _run_ffprobe(["-show_chapters", "-of", "json", str(file)])
    except OSError as e:
        log.warning(f"ffprobe unavailable, cannot count chapters in {file.name}: {e}")
        return 0
    if result.returncode != 0:
        return 0
    try:
        data = json.loads(result.stdout)
        return len(data.get("chapters", []))
    except (json.JSONDecodeError, AttributeError):
        return 0


def extract_authors_from_tags(tags: dict) -> list[str]:
    """Extract author names from embedded tags.

    Checks album_artist first (less likely to carry narrator credits), then
    artist. Multiple authors separated by ";" or "&" are split.
    """
    for key in ("album_artist", "artist"):
        raw = tags.get(key, "")
        cleaned = _clean_author_tag(raw)
        if cleaned:
            parts = cleaned.replace(" & ", ";").split(";")
            return [p.strip() for p in parts if p.strip()]
    return []


# Role/credit indicators that mean the rest isn't the author
_ROLE_WORDS = frozenset({
    "introduction", "narrator", "narrated", "read", "performed",
    "foreword", "afterword", "translated", "edited",
})


def _clean_author_tag(raw: str) -> str:
    """Clean an artist/album_artist tag into a usable author name.

    Strips:
      - "Unknown", "Various", "Various Artists" -> empty
      - "Author - narrated by X" -> "Author"
    """
    if not raw or not raw.strip():
        return ""

    name = raw.strip()
    if name.lower() in ("unknown", "various", "various artists", "n/a", "none"):
        return ""

    if " - " in name:
        left, right = name.split(" - ", 1)
        if any(right.strip().lower().startswith(w) for w in _ROLE_WORDS):
            name = left.strip()

    return name


def read_book_metadata(file: Path) -> BookMetadata:
    """Build tag values for a conversion from the file's embedded tags.

    Falls back to the file stem for the title. Never raises.
    """
    tags = get_tags(file)
    return BookMetadata(
        title=tags.get("title") or tags.get("album") or file.stem,
        authors=extract_authors_from_tags(tags),
        album=tags.get("album", ""),
        narrator=tags.get("composer", ""),
        year=tags.get("date", "")[:4],
        genre=tags.get("genre") or "Audiobook",
        description=tags.get("comment", ""),
    )
