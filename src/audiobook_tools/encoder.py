"""ffmpeg discovery and command construction for convert and merge jobs.

Convert jobs read one source file; merge jobs read an ffmpeg concat-demuxer
list (``files.txt``) plus an FFMETADATA1 chapter file (``metadata.txt``)
generated from the ordered ChapterInfo list. Both write an ipod/M4B
container and report machine-readable progress on stdout
(``-progress pipe:1``).
"""

from __future__ import annotations

import functools
import shutil
import subprocess
from datetime import timedelta
from pathlib import Path

from loguru import logger

from . import ffprobe
from .models import BookMetadata, ChapterInfo, ConversionJob, JobKind

log = logger.bind(stage="encoder")

DEFAULT_BITRATE = "128k"
COPY_BITRATE = "copy"


def find_executable(name: str) -> str | None:
    """Resolve a binary by explicit path or PATH lookup."""
    candidate = Path(name)
    if candidate.is_absolute() or candidate.parent != Path("."):
        return str(candidate) if candidate.is_file() else None
    return shutil.which(name)


@functools.cache
def detect_encoder(ffmpeg: str = "ffmpeg") -> str:
    """Check if aac_at (Apple AudioToolbox) is available, fall back to aac."""
    try:
        result = subprocess.run(
            [ffmpeg, "-hide_banner", "-encoders"],
            capture_output=True,
            text=True,
        )
    except OSError as e:
        log.warning(f"Could not list ffmpeg encoders: {e}")
        return "aac"
    if "aac_at" in result.stdout:
        log.info("Using aac_at encoder (Apple AudioToolbox)")
        return "aac_at"
    log.info("Using default aac encoder")
    return "aac"


def resolve_bitrate(job: ConversionJob) -> str:
    """Bitrate argument for ``-b:a``, or ``copy`` for stream copy.

    Probes the source when the config asks to preserve the original bitrate
    (or gives none); falls back to 128k when probing fails.
    """
    requested = job.config.effective_bitrate
    if requested:
        return requested
    probe_target = job.source_path
    if job.kind == JobKind.MERGE and job.chapters:
        probe_target = Path(job.chapters[0].file_path)
    try:
        bps = ffprobe.get_bitrate(probe_target)
    except (ValueError, OSError) as e:
        log.warning(f"Failed to detect bitrate from {probe_target.name}: {e}")
        return DEFAULT_BITRATE
    return f"{max(bps // 1000, 8)}k"


def build_tags(metadata: BookMetadata) -> dict[str, str]:
    """Container tag set for an audiobook."""
    tags: dict[str, str] = {
        "title": metadata.title,
        "album": metadata.album or metadata.title,
        "genre": metadata.genre or "Audiobook",
        "media_type": "2",
    }
    if metadata.author:
        tags["artist"] = metadata.author
        tags["album_artist"] = metadata.author
    if metadata.narrator:
        tags["composer"] = metadata.narrator
    if metadata.year:
        tags["date"] = metadata.year
    if metadata.description:
        tags["comment"] = metadata.description
    return {k: v for k, v in tags.items() if v}


def _ms(value: timedelta) -> int:
    return value // timedelta(milliseconds=1)


def _escape_ffmetadata(value: str) -> str:
    """Escape FFMETADATA special characters (= ; # \\ and newline)."""
    out = value
    for ch in ("\\", "=", ";", "#"):
        out = out.replace(ch, "\\" + ch)
    return out.replace("\n", "\\\n")


def write_concat_list(chapters: list[ChapterInfo], dest: Path) -> Path:
    """Write an ffmpeg concat demuxer file for the ordered chapters."""
    lines = []
    for chapter in sorted(chapters, key=lambda c: c.order):
        escaped = str(Path(chapter.file_path).resolve()).replace("'", "'\\''")
        lines.append(f"file '{escaped}'")
    dest.write_text("\n".join(lines) + "\n")
    log.debug(f"Wrote {len(lines)} entries to {dest.name}")
    return dest


def write_ffmetadata(
    chapters: list[ChapterInfo], metadata: BookMetadata | None, dest: Path,
) -> Path:
    """Write an FFMETADATA1 file with one chapter mark per planned chapter.

    Marks use a millisecond timebase and the planned start offsets verbatim.
    """
    lines = [";FFMETADATA1"]
    if metadata is not None:
        for key, value in build_tags(metadata).items():
            lines.append(f"{key}={_escape_ffmetadata(value)}")
    lines.append("")

    for chapter in sorted(chapters, key=lambda c: c.order):
        lines.extend([
            "[CHAPTER]",
            "TIMEBASE=1/1000",
            f"START={_ms(chapter.start_time)}",
            f"END={_ms(chapter.end_time)}",
            f"title={_escape_ffmetadata(chapter.title)}",
            "",
        ])
    dest.write_text("\n".join(lines))
    log.debug(f"Wrote {len(chapters)} chapters to {dest.name}")
    return dest


def _audio_args(job: ConversionJob, encoder: str, bitrate: str) -> list[str]:
    if bitrate == COPY_BITRATE:
        args = ["-c:a", "copy"]
    else:
        args = ["-c:a", encoder, "-b:a", bitrate]
    if job.config.channels > 0 and bitrate != COPY_BITRATE:
        args.extend(["-ac", str(job.config.channels)])
    return args


def _cover_path(metadata: BookMetadata | None) -> Path | None:
    if metadata is None or metadata.cover_path is None:
        return None
    cover = Path(metadata.cover_path)
    return cover if cover.is_file() else None


def build_command(
    job: ConversionJob,
    ffmpeg: str,
    encoder: str,
    bitrate: str,
    aux_dir: Path | None = None,
) -> list[str]:
    """Build the full ffmpeg argument list for a job.

    Merge jobs need ``aux_dir`` to hold the concat list and chapter file.
    """
    cmd = [ffmpeg, "-hide_banner", "-nostdin", "-y", "-loglevel", "error"]
    cover = _cover_path(job.metadata)

    if job.kind == JobKind.MERGE:
        if aux_dir is None:
            raise ValueError("merge jobs need an aux_dir for concat/metadata files")
        files_txt = write_concat_list(job.chapters, aux_dir / "files.txt")
        metadata_txt = write_ffmetadata(job.chapters, job.metadata, aux_dir / "metadata.txt")
        cmd.extend(["-f", "concat", "-safe", "0", "-i", str(files_txt)])
        cmd.extend(["-i", str(metadata_txt)])
        meta_index = 1
        cover_index = 2
    else:
        cmd.extend(["-i", str(job.source_path)])
        meta_index = None
        cover_index = 1

    if cover is not None:
        cmd.extend(["-i", str(cover)])

    cmd.extend(["-map", "0:a"])
    if cover is not None:
        cmd.extend([
            "-map", f"{cover_index}:v",
            "-c:v", "copy",
            "-disposition:v:0", "attached_pic",
        ])

    if meta_index is not None:
        cmd.extend(["-map_metadata", str(meta_index), "-map_chapters", str(meta_index)])
    else:
        cmd.extend(["-map_metadata", "-1"])
        if job.metadata is not None:
            for key, value in build_tags(job.metadata).items():
                cmd.extend(["-metadata", f"{key}={value}"])

    cmd.extend(_audio_args(job, encoder, bitrate))
    cmd.extend(["-movflags", "+faststart", "-progress", "pipe:1", "-nostats"])
    # Force ipod/m4b format regardless of the output extension
    cmd.extend(["-f", "ipod", str(job.output_path)])
    return cmd
