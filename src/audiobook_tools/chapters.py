"""Chapter planning for multi-file merges.

Orders a folder's MP3 files with a natural sort, probes each duration, and
assigns chapter start offsets. Offsets are always rebuilt for the whole list
so ``start_time[i] == sum(duration[:i])`` holds after any reordering.
"""

from __future__ import annotations

import re
from datetime import timedelta
from pathlib import Path

from loguru import logger

from . import ffprobe
from .errors import ChapterPlanError
from .models import MERGE_INPUT_EXTENSIONS, BookMetadata, ChapterInfo
from .sanitize import clean_chapter_name, sanitize_chapter_title, sanitize_filename

DEFAULT_CHAPTER_DURATION = timedelta(minutes=3)

_DIGITS = re.compile(r"(\d+)")


def natural_sort_key(path: Path | str) -> tuple:
    """Sort key comparing digit runs as integers: track2 < track10.

    ``re.split`` with a capture group alternates text and digit runs
    starting with text, so integers only ever meet integers.
    """
    name = Path(path).name
    parts = _DIGITS.split(name)
    key = tuple(
        int(part) if i % 2 else part.casefold()
        for i, part in enumerate(parts)
    )
    return key, name


def rebuild_offsets(chapters: list[ChapterInfo]) -> list[ChapterInfo]:
    """Renumber ``order`` from 0 and recompute every start offset.

    The list position is authoritative; incoming ``order`` and
    ``start_time`` values are ignored.
    """
    rebuilt = []
    offset = timedelta(0)
    for i, chapter in enumerate(chapters):
        rebuilt.append(ChapterInfo(
            file_path=chapter.file_path,
            title=chapter.title,
            start_time=offset,
            duration=chapter.duration,
            order=i,
        ))
        offset += chapter.duration
    return rebuilt


def total_duration(chapters: list[ChapterInfo]) -> timedelta:
    return sum((c.duration for c in chapters), timedelta(0))


def validate_offsets(chapters: list[ChapterInfo]) -> None:
    """Raise ChapterPlanError unless offsets are contiguous from zero."""
    if not chapters:
        raise ChapterPlanError("No chapters to merge")
    expected = timedelta(0)
    for i, chapter in enumerate(sorted(chapters, key=lambda c: c.order)):
        if chapter.order != i:
            raise ChapterPlanError(f"Chapter order has a gap at index {i}")
        if chapter.start_time != expected:
            raise ChapterPlanError(
                f"Chapter {i} starts at {chapter.start_time}, expected {expected}"
            )
        if chapter.duration < timedelta(0):
            raise ChapterPlanError(f"Chapter {i} has a negative duration")
        expected += chapter.duration


def chapter_title(file: Path, index: int, tags: dict | None = None) -> str:
    """Embedded title tag, else ``Chapter N: <cleaned file name>``."""
    embedded = sanitize_chapter_title((tags or {}).get("title", ""))
    if embedded:
        return embedded
    cleaned = clean_chapter_name(file.stem)
    return f"Chapter {index}: {cleaned}" if cleaned else f"Chapter {index}"


class ChapterPlanner:
    """Builds and reorders ChapterInfo lists for a merge."""

    def __init__(self, default_duration: timedelta = DEFAULT_CHAPTER_DURATION, log=None) -> None:
        self.default_duration = default_duration
        self.log = log or logger.bind(stage="chapters")

    def scan(self, folder: Path) -> list[Path]:
        """MP3 files directly inside ``folder``, naturally sorted."""
        if not folder.is_dir():
            raise ChapterPlanError(f"Not a directory: {folder}")
        files = [
            f for f in folder.iterdir()
            if f.is_file() and f.suffix.lower() in MERGE_INPUT_EXTENSIONS
        ]
        files.sort(key=natural_sort_key)
        self.log.debug(f"Found {len(files)} chapter file(s) in {folder.name}")
        return files

    def probe_duration(self, file: Path) -> timedelta:
        try:
            seconds = ffprobe.get_duration(file)
        except (ValueError, OSError) as e:
            self.log.warning(
                f"Could not probe {file.name}, assuming "
                f"{self.default_duration.total_seconds():.0f}s: {e}"
            )
            return self.default_duration
        return timedelta(seconds=seconds)

    def plan(self, files: list[Path]) -> list[ChapterInfo]:
        """Natural-sort ``files`` and build a contiguous chapter list."""
        ordered = sorted((Path(f) for f in files), key=natural_sort_key)
        drafts = []
        for i, file in enumerate(ordered, start=1):
            drafts.append(ChapterInfo(
                file_path=file,
                title=chapter_title(file, i, ffprobe.get_tags(file)),
                start_time=timedelta(0),
                duration=self.probe_duration(file),
                order=i - 1,
            ))
        chapters = rebuild_offsets(drafts)
        if chapters:
            self.log.info(
                f"Planned {len(chapters)} chapters, total {total_duration(chapters)}"
            )
        return chapters

    def reorder(
        self, chapters: list[ChapterInfo], old_index: int, new_index: int,
    ) -> list[ChapterInfo]:
        """Move the chapter at ``old_index`` so it ends up at ``new_index``.

        Returns a new list with all offsets recomputed; the input list is
        not modified.
        """
        ordered = sorted(chapters, key=lambda c: c.order)
        count = len(ordered)
        if not (0 <= old_index < count and 0 <= new_index < count):
            raise IndexError(
                f"reorder({old_index}, {new_index}) out of range for {count} chapters"
            )
        moved = ordered.pop(old_index)
        ordered.insert(new_index, moved)
        return rebuild_offsets(ordered)

    def rename(self, chapters: list[ChapterInfo], index: int, title: str) -> list[ChapterInfo]:
        """Return a copy with chapter ``index`` retitled."""
        ordered = sorted(chapters, key=lambda c: c.order)
        cleaned = sanitize_chapter_title(title)
        if not cleaned:
            raise ChapterPlanError("Chapter title cannot be empty")
        chapter = ordered[index]
        ordered[index] = ChapterInfo(
            file_path=chapter.file_path,
            title=cleaned,
            start_time=chapter.start_time,
            duration=chapter.duration,
            order=chapter.order,
        )
        return ordered


def suggest_book_metadata(folder: Path, chapters: list[ChapterInfo]) -> BookMetadata:
    """Book-level tags for a merge, from the first chapter's album tags.

    Falls back to the folder name for the title.
    """
    tags = ffprobe.get_tags(Path(chapters[0].file_path)) if chapters else {}
    return BookMetadata(
        title=tags.get("album") or folder.name,
        authors=ffprobe.extract_authors_from_tags(tags),
        narrator=tags.get("composer", ""),
        year=tags.get("date", "")[:4],
        genre=tags.get("genre") or "Audiobook",
    )


def output_filename(metadata: BookMetadata) -> str:
    """``Author - Title.m4b`` (or just the title when there is no author)."""
    title = metadata.title or "Audiobook"
    stem = f"{metadata.author} - {title}" if metadata.author else title
    return sanitize_filename(stem) + ".m4b"
