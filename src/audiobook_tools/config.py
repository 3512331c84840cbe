"""Tool configuration via pydantic-settings (.env + env vars)."""

import sys
from pathlib import Path

from loguru import logger
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError
from .models import AudioProcessingConfig


class ToolsConfig(BaseSettings):
    """All conversion configuration with layered resolution:
    .env file < environment variables < constructor kwargs.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    # -- External tools --
    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"

    # -- Directories --
    output_dir: Path | None = None  # None = next to each source file
    work_dir: Path = Path.home() / ".cache" / "audiobook-tools"
    log_dir: Path = Path.home() / ".local" / "state" / "audiobook-tools"
    library_db: Path | None = None

    # -- Encoding --
    parallel_jobs: int = 0  # 0 = auto (CPU-based)
    bitrate: str | None = None  # None = preserve source bitrate
    preserve_original_bitrate: bool = False
    channels: int = 0

    # -- Scheduling --
    start_delay: float = 0.15
    progress_interval: float = 1.0
    progress_threshold: float = 0.02
    stall_timeout: float = 0.0  # 0 = no watchdog

    # -- Merging --
    default_chapter_seconds: float = 180.0
    verify_chapters: bool = True

    # -- Behavior --
    delete_source: bool = False
    min_free_space_multiplier: int = 2
    log_level: str = "INFO"

    def check(self) -> None:
        """Raise ConfigError listing every out-of-range setting."""
        problems = []
        for name in ("parallel_jobs", "start_delay", "stall_timeout", "default_chapter_seconds"):
            if getattr(self, name) < 0:
                problems.append(f"{name} must not be negative")
        if self.progress_interval <= 0:
            problems.append("progress_interval must be positive")
        if not 0 <= self.progress_threshold < 1:
            problems.append("progress_threshold must be in [0, 1)")
        if self.min_free_space_multiplier < 1:
            problems.append("min_free_space_multiplier must be at least 1")
        if problems:
            raise ConfigError("; ".join(problems))

    def processing_config(self, parallel_jobs: int | None = None) -> AudioProcessingConfig:
        """Build the per-operation config from these settings.

        ``parallel_jobs`` replaces the configured value when it is given
        (callers pass the capability-derived default when the setting is 0).
        """
        jobs = self.parallel_jobs if parallel_jobs is None else parallel_jobs
        return AudioProcessingConfig(
            parallel_jobs=max(1, jobs),
            bitrate=self.bitrate,
            preserve_original_bitrate=self.preserve_original_bitrate,
            channels=self.channels,
            output_dir=self.output_dir,
        )

    def ensure_dirs(self) -> None:
        """Create all required directories if they don't exist."""
        for d in (self.work_dir, self.log_dir):
            d.mkdir(parents=True, exist_ok=True)
        if self.output_dir is not None:
            self.output_dir.mkdir(parents=True, exist_ok=True)

    def setup_logging(self) -> None:
        """Configure loguru for the tools."""
        logger.remove()  # Remove default stderr handler

        log_format = (
            "{time:YYYY-MM-DDTHH:mm:ssZ} | {level:<8} | "
            "{extra[stage]:<12} | {message}"
        )

        def _default_extra(record):
            record["extra"].setdefault("stage", "")
            return True

        logger.add(
            sys.stderr,
            format=log_format,
            level=self.log_level.upper(),
            filter=_default_extra,
        )

        self.log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(self.log_dir / "audiobook-tools.log"),
            format=log_format,
            level="DEBUG",
            rotation="10 MB",
            retention="30 days",
            filter=_default_extra,
        )
