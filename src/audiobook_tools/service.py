"""Batch conversion and merge service -- the entry point callers submit to.

``start_batch`` / ``start_merge`` validate the environment up front, then
run the scheduler on a coordinating thread and hand back a ``BatchHandle``:
a progress stream to iterate and a future that resolves to the terminal
``ProcessingResult``. Only environment and state problems raise; every
per-file problem ends up in the result.
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict
from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from loguru import logger

from . import capabilities as caps_mod
from . import ffprobe
from .cancellation import CancellationController, CancellationToken
from .collector import ConversionResultCollector
from .concurrency import check_disk_space
from .encoder import find_executable
from .errors import BatchValidationError, EnvironmentValidationError, OperationInProgressError
from .merger import MergeJobRunner, build_merge_job
from .models import (
    OUTPUT_SUFFIX,
    AudiobookFile,
    AudioProcessingConfig,
    BatchState,
    BookMetadata,
    ChapterInfo,
    ConversionJob,
    JobOutcome,
    ProcessingResult,
    SystemCapabilities,
)
from .progress import (
    STAGE_CANCELLED,
    STAGE_COMPLETED,
    STAGE_MERGING,
    STAGE_PROCESSING,
    ProgressAggregator,
    ProgressStream,
)
from .scheduler import JobScheduler
from .worker import TranscodeWorker

if TYPE_CHECKING:
    from .config import ToolsConfig
    from .library_db import LibraryDB


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    issues: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


@dataclass
class BatchHandle:
    """What a caller holds while an operation runs."""

    progress: ProgressStream
    result: Future
    token: CancellationToken

    def cancel(self) -> None:
        self.token.cancel()

    def wait(self, timeout: float | None = None) -> ProcessingResult:
        return self.result.result(timeout)


def output_path_for(source: Path, config: AudioProcessingConfig) -> Path:
    """``<dir>/<stem>.m4b`` next to the source, or in ``config.output_dir``."""
    directory = config.output_dir or source.parent
    return directory / (source.stem + OUTPUT_SUFFIX)


def _as_audiobook_file(item: AudiobookFile | Path | str) -> AudiobookFile:
    if isinstance(item, AudiobookFile):
        return item
    return AudiobookFile(path=Path(item))


def _check_unique(jobs: list[ConversionJob]) -> None:
    """Reject repeated sources and sources that would share an output."""
    sources: set[Path] = set()
    outputs: dict[Path, Path] = {}
    for job in jobs:
        source = job.source_path.resolve()
        if source in sources:
            raise BatchValidationError(f"Duplicate source in batch: {job.source_path}")
        sources.add(source)
        output = job.output_path.resolve()
        if output in outputs:
            raise BatchValidationError(
                f"{job.source_path} and {outputs[output]} would both write {job.output_path}"
            )
        outputs[output] = job.source_path


class ConversionService:
    """Orchestrates batch conversions and merges for one caller.

    One operation at a time: the state machine is
    ``idle -> running -> completed | cancelled`` and a finished service can
    start again.
    """

    def __init__(
        self,
        config: ToolsConfig,
        library: LibraryDB | None = None,
        capabilities: SystemCapabilities | None = None,
        worker: TranscodeWorker | None = None,
        log=None,
    ) -> None:
        self.config = config
        self.library = library
        self.capabilities = capabilities or caps_mod.detect()
        self.log = log or logger.bind(stage="service")
        config.check()
        config.ensure_dirs()
        ffprobe.configure(config.ffprobe_bin)
        self.worker = worker or TranscodeWorker(
            ffmpeg=config.ffmpeg_bin,
            progress_threshold=config.progress_threshold,
            stall_timeout=config.stall_timeout,
            work_dir=config.work_dir,
            log=self.log.bind(stage="worker"),
        )
        self.collector = ConversionResultCollector(
            library=library,
            delete_source=config.delete_source,
            log=self.log.bind(stage="collector"),
        )
        self.cancellation = CancellationController()
        self._lock = threading.Lock()
        self._state = BatchState.IDLE

    @property
    def state(self) -> BatchState:
        return self._state

    # -- Environment --

    def validate_environment(self) -> ValidationResult:
        """Check the encoder and prober are resolvable."""
        issues = []
        for label, binary in (("ffmpeg", self.config.ffmpeg_bin), ("ffprobe", self.config.ffprobe_bin)):
            if find_executable(binary) is None:
                issues.append(f"{label} not found: {binary}")
        hints = caps_mod.recommendations(self.capabilities)
        return ValidationResult(is_valid=not issues, issues=issues, recommendations=hints)

    def optimal_config(
        self, operation: str = caps_mod.OPERATION_BATCH, file_count: int | None = None,
    ) -> AudioProcessingConfig:
        """Config for an operation from host capabilities and user settings.

        A configured ``parallel_jobs`` of 0 takes the host recommendation.
        """
        recommended = caps_mod.recommend_parallel_jobs(self.capabilities, operation, file_count)
        preferences = self.config.processing_config(self.config.parallel_jobs or recommended)
        return caps_mod.optimal_config(self.capabilities, operation, file_count, preferences)

    def _preflight(self, sources_by_dest: dict[Path, list[Path]]) -> None:
        validation = self.validate_environment()
        issues = list(validation.issues)
        for dest, sources in sources_by_dest.items():
            existing = [s for s in sources if s.exists()]
            if existing and not check_disk_space(
                existing, dest, self.config.min_free_space_multiplier,
            ):
                issues.append(f"Insufficient disk space in {dest}")
        if issues:
            for issue in issues:
                self.log.error(f"Environment check failed: {issue}")
            raise EnvironmentValidationError(issues)

    # -- Operations --

    def _begin(self) -> CancellationToken:
        with self._lock:
            if self._state == BatchState.RUNNING:
                raise OperationInProgressError("Another conversion is already running")
            self._state = BatchState.RUNNING
            return self.cancellation.new_token()

    def _launch(
        self,
        name: str,
        token: CancellationToken,
        aggregator: ProgressAggregator,
        body: Callable[[], tuple[list[JobOutcome], int]],
    ) -> BatchHandle:
        future: Future = Future()
        future.set_running_or_notify_cancel()
        handle = BatchHandle(progress=aggregator.stream, result=future, token=token)

        def coordinate() -> None:
            started = time.monotonic()
            try:
                outcomes, parallel_jobs = body()
                result = self.collector.collect(
                    outcomes, time.monotonic() - started, parallel_jobs,
                )
            except Exception as e:
                self.log.exception(f"{name} aborted")
                self._finish(token, aggregator)
                future.set_exception(e)
                return
            self._finish(token, aggregator)
            future.set_result(result)

        threading.Thread(target=coordinate, name=name, daemon=True).start()
        return handle

    def _finish(self, token: CancellationToken, aggregator: ProgressAggregator) -> None:
        cancelled = token.cancelled
        with self._lock:
            self._state = BatchState.CANCELLED if cancelled else BatchState.COMPLETED
        # State leaves RUNNING before the stream closes
        aggregator.finish(STAGE_CANCELLED if cancelled else STAGE_COMPLETED)

    def start_batch(
        self,
        files: list[AudiobookFile] | list[Path],
        config: AudioProcessingConfig | None = None,
    ) -> BatchHandle:
        """Convert each file to ``<stem>.m4b`` with bounded parallelism.

        Raises:
            BatchValidationError: a source repeats or two sources map to
                the same output path.
            OperationInProgressError: another operation is running.
            EnvironmentValidationError: encoder missing or not enough disk
                space; raised before any job is scheduled.
        """
        items = [_as_audiobook_file(f) for f in files]
        if config is None:
            config = self.optimal_config(caps_mod.OPERATION_BATCH, len(items))
        else:
            config = config.clamped(self.capabilities.max_parallel_jobs)

        jobs = [
            ConversionJob(
                source_path=item.path,
                output_path=output_path_for(item.path, config),
                config=config,
                metadata=item.metadata,
                duration=item.duration,
            )
            for item in items
        ]
        _check_unique(jobs)
        by_dest: dict[Path, list[Path]] = defaultdict(list)
        for job in jobs:
            by_dest[job.output_path.parent].append(job.source_path)

        token = self._begin()
        try:
            self._preflight(by_dest)
        except EnvironmentValidationError:
            with self._lock:
                self._state = BatchState.IDLE
            raise

        aggregator = ProgressAggregator(
            [j.source_path for j in jobs],
            interval=self.config.progress_interval,
            stage=STAGE_PROCESSING,
            log=self.log.bind(stage="progress"),
        )
        scheduler = JobScheduler(
            self.worker,
            start_delay=self.config.start_delay,
            tick_interval=self.config.progress_interval,
            post_process=self.collector.integrate,
            log=self.log.bind(stage="scheduler"),
        )
        self.log.info(
            f"Batch of {len(jobs)} file(s), parallel_jobs={config.parallel_jobs}, "
            f"bitrate={config.effective_bitrate or 'source'}"
        )

        def body() -> tuple[list[JobOutcome], int]:
            return scheduler.run(jobs, config.parallel_jobs, token, aggregator), config.parallel_jobs

        return self._launch("batch-conversion", token, aggregator, body)

    def start_merge(
        self,
        chapters: list[ChapterInfo],
        output_path: Path,
        metadata: BookMetadata | None = None,
        config: AudioProcessingConfig | None = None,
    ) -> BatchHandle:
        """Concatenate the planned chapters into one chaptered M4B.

        Raises:
            ChapterPlanError: the chapter list is empty or its offsets are
                not contiguous.
            OperationInProgressError: another operation is running.
            EnvironmentValidationError: see ``start_batch``.
        """
        if config is None:
            config = self.optimal_config(caps_mod.OPERATION_MERGE, 1)
        job = build_merge_job(chapters, output_path, config, metadata)

        token = self._begin()
        try:
            self._preflight({output_path.parent: [Path(c.file_path) for c in job.chapters]})
        except EnvironmentValidationError:
            with self._lock:
                self._state = BatchState.IDLE
            raise

        aggregator = ProgressAggregator(
            [job.source_path],
            interval=self.config.progress_interval,
            stage=STAGE_MERGING,
            log=self.log.bind(stage="progress"),
        )
        runner = MergeJobRunner(
            self.worker,
            collector=self.collector,
            verify_chapters=self.config.verify_chapters,
            tick_interval=self.config.progress_interval,
            log=self.log.bind(stage="merge"),
        )

        def body() -> tuple[list[JobOutcome], int]:
            return [runner.run(job, token, aggregator)], 1

        return self._launch("merge", token, aggregator, body)

    def cancel(self) -> bool:
        """Cancel the running operation. Idempotent; a no-op when idle."""
        return self.cancellation.cancel()
