"""Exception hierarchy and error categorization for conversion and merging."""

from .models import (
    ALREADY_EXISTS,
    CANCELLED_BY_USER,
    STALLED,
    ErrorCategory,
)


class ConverterError(Exception):
    """Base exception for all conversion errors."""


class ConfigError(ConverterError):
    """Invalid or missing configuration."""


class EnvironmentValidationError(ConverterError):
    """Pre-flight validation failed (encoder missing, no disk space).

    Raised once for the whole batch, before any job is scheduled.
    """

    def __init__(self, issues: list[str]) -> None:
        super().__init__("; ".join(issues) or "Environment validation failed")
        self.issues = list(issues)


class OperationInProgressError(ConverterError):
    """Another batch or merge is already running on this service."""


class BatchValidationError(ConverterError):
    """A batch names the same source twice or maps two sources to one output."""


class ChapterPlanError(ConverterError):
    """A chapter list is empty or its offsets are inconsistent."""


class LibraryUpdateError(ConverterError):
    """The library could not be updated with a freshly produced file."""


class TranscodeError(ConverterError):
    """A single job failed. ``reason`` is the short, user-facing message."""

    category = ErrorCategory.TRANSCODE

    def __init__(self, reason: str, details: str | None = None) -> None:
        super().__init__(f"{reason}: {details}" if details else reason)
        self.reason = reason
        self.details = details


class OutputExistsError(TranscodeError):
    """The job's output path is already taken."""

    def __init__(self, path) -> None:
        super().__init__(ALREADY_EXISTS, f"Output file already exists: {path}")
        self.path = path


class JobCancelledError(TranscodeError):
    """The job observed the cancellation token."""

    category = ErrorCategory.CANCELLED

    def __init__(self) -> None:
        super().__init__(CANCELLED_BY_USER)


class EncoderStalledError(TranscodeError):
    """The encoder produced no progress within the stall timeout."""

    def __init__(self, seconds: float) -> None:
        super().__init__(STALLED, f"No encoder progress for {seconds:g}s")
        self.seconds = seconds


class ExternalToolError(TranscodeError):
    """An external subprocess (ffmpeg, ffprobe) exited non-zero."""

    def __init__(self, tool: str, exit_code: int, stderr: str) -> None:
        super().__init__(f"{tool} exited with code {exit_code}", stderr.strip() or None)
        self.tool = tool
        self.exit_code = exit_code
        self.stderr = stderr


def categorize_error(exc: BaseException) -> ErrorCategory:
    """Map an exception to the category reported in result summaries."""
    if isinstance(exc, EnvironmentValidationError):
        return ErrorCategory.ENVIRONMENT
    if isinstance(exc, LibraryUpdateError):
        return ErrorCategory.INTEGRATION
    if isinstance(exc, TranscodeError):
        return exc.category
    return ErrorCategory.TRANSCODE
