"""Core enums, constants, and data types for batch conversion and merging.

Enums:
    FileStatus     -- Per-file lifecycle (waiting, converting, completed, failed).
    BatchState     -- Orchestrator state machine (idle, running, cancelled, completed).
    JobKind        -- Single-file conversion or multi-file merge.
    ErrorCategory  -- Error classification (environment, transcode, cancelled,
                      integration) used in result summaries.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from datetime import timedelta
from enum import StrEnum
from pathlib import Path
from typing import Any


class FileStatus(StrEnum):
    WAITING = "waiting"
    CONVERTING = "converting"
    COMPLETED = "completed"
    FAILED = "failed"


class BatchState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class JobKind(StrEnum):
    CONVERT = "convert"
    MERGE = "merge"


class ErrorCategory(StrEnum):
    ENVIRONMENT = "environment"
    TRANSCODE = "transcode"
    CANCELLED = "cancelled"
    INTEGRATION = "integration"


# Failure reasons surfaced in FileProgressInfo.error_message / ProcessingError
ALREADY_EXISTS = "AlreadyExists"
CANCELLED_BY_USER = "Cancelled by user"
STALLED = "Stalled"

OUTPUT_SUFFIX = ".m4b"
MERGE_INPUT_EXTENSIONS: frozenset[str] = frozenset({".mp3"})

# Hard ceiling on parallel encoder processes regardless of core count
MAX_SAFE_PARALLEL_JOBS = 8


@dataclass(frozen=True)
class SystemCapabilities:
    """Host limits used to derive safe parallelism."""

    cpu_cores: int
    total_memory_mb: int = 0
    platform: str = ""
    is_fallback: bool = False

    @property
    def max_parallel_jobs(self) -> int:
        return max(1, min(self.cpu_cores, MAX_SAFE_PARALLEL_JOBS))

    @property
    def default_parallel_jobs(self) -> int:
        if self.is_fallback:
            return 1
        if self.cpu_cores >= 8:
            return 3
        if self.cpu_cores >= 4:
            return 2
        return 1


@dataclass(frozen=True)
class AudioProcessingConfig:
    """Per-operation encoder settings.

    ``bitrate`` of None means "preserve the source bitrate"; the literal
    ``"copy"`` stream-copies the audio. When ``preserve_original_bitrate`` is
    set the bitrate is ignored.
    """

    parallel_jobs: int = 1
    bitrate: str | None = None
    preserve_original_bitrate: bool = False
    channels: int = 0  # 0 = keep source channel layout
    output_dir: Path | None = None

    @property
    def effective_bitrate(self) -> str | None:
        """Bitrate to request from the encoder, None to probe the source."""
        if self.preserve_original_bitrate:
            return None
        return self.bitrate

    def clamped(self, max_parallel_jobs: int) -> AudioProcessingConfig:
        """Return a copy with parallel_jobs clamped to [1, max_parallel_jobs]."""
        upper = max(1, max_parallel_jobs)
        return replace(self, parallel_jobs=max(1, min(self.parallel_jobs, upper)))


@dataclass
class BookMetadata:
    """Tag values written into the output container."""

    title: str = ""
    authors: list[str] = field(default_factory=list)
    album: str = ""
    narrator: str = ""
    year: str = ""
    genre: str = "Audiobook"
    description: str = ""
    cover_path: Path | None = None

    @property
    def author(self) -> str:
        return ", ".join(a for a in self.authors if a)


@dataclass
class AudiobookFile:
    """A source file submitted by the caller, with optional known metadata."""

    path: Path
    metadata: BookMetadata | None = None
    duration: float | None = None  # seconds; probed when unknown


@dataclass(frozen=True)
class ChapterInfo:
    """One chapter of a merge plan.

    For a list sorted by ``order``: start_time[i] == sum(duration[:i]).
    """

    file_path: Path
    title: str
    start_time: timedelta
    duration: timedelta
    order: int

    @property
    def end_time(self) -> timedelta:
        return self.start_time + self.duration

    @property
    def formatted_duration(self) -> str:
        total = int(self.duration.total_seconds())
        h, rem = divmod(total, 3600)
        m, s = divmod(rem, 60)
        if h:
            return f"{h}:{m:02d}:{s:02d}"
        return f"{m}:{s:02d}"


@dataclass
class ConversionJob:
    """One unit of encoder work: a single conversion or a merge."""

    source_path: Path
    output_path: Path
    config: AudioProcessingConfig
    metadata: BookMetadata | None = None
    duration: float | None = None
    kind: JobKind = JobKind.CONVERT
    chapters: list[ChapterInfo] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.source_path.name


@dataclass
class FileProgressInfo:
    """Live status of one submitted file."""

    status: FileStatus = FileStatus.WAITING
    progress: float = 0.0
    speed: str | None = None
    error_message: str | None = None
    start_time: float | None = None  # monotonic clock
    elapsed_time: float = 0.0  # seconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": str(self.status),
            "progress": self.progress,
            "speed": self.speed,
            "error": self.error_message,
        }


@dataclass(frozen=True)
class ProcessingUpdate:
    """One overall-progress snapshot. Superseded by the next one."""

    stage: str
    progress: float
    speed: str | None = None
    estimated_time_remaining: float | None = None  # seconds
    current_file: str | None = None
    completed_files: int = 0
    failed_files: int = 0
    total_files: int = 0
    active_workers: int = 0
    elapsed_time: float = 0.0
    per_file: dict[str, FileProgressInfo] = field(default_factory=dict)

    @property
    def eta_seconds(self) -> int | None:
        if self.estimated_time_remaining is None:
            return None
        return int(round(self.estimated_time_remaining))

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "progress": self.progress,
            "speed": self.speed,
            "eta_seconds": self.eta_seconds,
            "per_file": {path: info.to_dict() for path, info in self.per_file.items()},
        }


def snapshot_table(table: dict[str, FileProgressInfo]) -> dict[str, FileProgressInfo]:
    """Copy a per-file table so readers never share mutable records."""
    return {path: copy.copy(info) for path, info in table.items()}


@dataclass(frozen=True)
class ProcessingError:
    file_path: str
    message: str
    details: str | None = None
    category: ErrorCategory = ErrorCategory.TRANSCODE

    def to_dict(self) -> dict[str, str]:
        return {"file_path": self.file_path, "message": self.message}


@dataclass(frozen=True)
class JobOutcome:
    """Terminal status of one job, before aggregation into a result."""

    source_path: Path
    status: FileStatus
    output_path: Path | None = None
    error: str | None = None
    details: str | None = None
    category: ErrorCategory | None = None
    elapsed: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == FileStatus.COMPLETED

    @property
    def cancelled(self) -> bool:
        return self.category == ErrorCategory.CANCELLED

    def as_failure(
        self, error: str, details: str | None = None,
        category: ErrorCategory = ErrorCategory.TRANSCODE,
    ) -> JobOutcome:
        return replace(
            self,
            status=FileStatus.FAILED,
            output_path=None,
            error=error,
            details=details,
            category=category,
        )


@dataclass(frozen=True)
class ProcessingResult:
    """Terminal report of a batch or merge. Immutable once produced."""

    success: bool
    output_files: tuple[str, ...] = ()
    errors: tuple[ProcessingError, ...] = ()
    total_time: float = 0.0
    statistics: dict[str, Any] = field(default_factory=dict)

    @property
    def success_count(self) -> int:
        return len(self.output_files)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def cancelled_count(self) -> int:
        return sum(1 for e in self.errors if e.category == ErrorCategory.CANCELLED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "output_files": list(self.output_files),
            "success_count": self.success_count,
            "error_count": self.error_count,
            "errors": [e.to_dict() for e in self.errors],
        }
