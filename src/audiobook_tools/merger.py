"""Merge a planned chapter list into one chaptered M4B.

A merge is a single job (one output file), so it runs through the scheduler
with one slot. After encoding, the output's chapter count is checked against
the plan before the collector registers it.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

from . import ffprobe
from .chapters import total_duration, validate_offsets
from .models import (
    AudioProcessingConfig,
    BookMetadata,
    ChapterInfo,
    ConversionJob,
    ErrorCategory,
    JobKind,
    JobOutcome,
)
from .scheduler import JobScheduler

if TYPE_CHECKING:
    from .cancellation import CancellationToken
    from .collector import ConversionResultCollector
    from .progress import ProgressAggregator
    from .worker import TranscodeWorker


def merge_source_path(chapters: list[ChapterInfo]) -> Path:
    """Identity of a merge in progress tables: the chapters' common folder."""
    return Path(chapters[0].file_path).parent


def build_merge_job(
    chapters: list[ChapterInfo],
    output_path: Path,
    config: AudioProcessingConfig,
    metadata: BookMetadata | None = None,
) -> ConversionJob:
    """Validate the plan and wrap it in a MERGE ConversionJob."""
    validate_offsets(chapters)
    ordered = sorted(chapters, key=lambda c: c.order)
    return ConversionJob(
        source_path=merge_source_path(ordered),
        output_path=output_path,
        config=config,
        metadata=metadata,
        duration=total_duration(ordered).total_seconds(),
        kind=JobKind.MERGE,
        chapters=ordered,
    )


class MergeJobRunner:
    """Runs one merge job: encode, verify chapters, integrate."""

    def __init__(
        self,
        worker: TranscodeWorker,
        collector: ConversionResultCollector | None = None,
        verify_chapters: bool = True,
        tick_interval: float = 1.0,
        log=None,
    ) -> None:
        self.worker = worker
        self.collector = collector
        self.verify_chapters = verify_chapters
        self.log = log or logger.bind(stage="merge")
        self.scheduler = JobScheduler(
            worker,
            start_delay=0.0,
            tick_interval=tick_interval,
            post_process=self._post_process,
            log=self.log,
        )

    def run(
        self,
        job: ConversionJob,
        token: CancellationToken,
        aggregator: ProgressAggregator,
    ) -> JobOutcome:
        self.log.info(
            f"Merging {len(job.chapters)} chapters into {job.output_path.name}"
        )
        [outcome] = self.scheduler.run([job], 1, token, aggregator)
        return outcome

    def _post_process(self, job: ConversionJob, outcome: JobOutcome) -> JobOutcome:
        if self.verify_chapters:
            found = ffprobe.count_chapters(job.output_path)
            expected = len(job.chapters)
            if found != expected:
                self.log.error(
                    f"Chapter count mismatch in {job.output_path.name}: "
                    f"expected {expected}, found {found}"
                )
                job.output_path.unlink(missing_ok=True)
                return outcome.as_failure(
                    "Chapter count mismatch",
                    f"expected {expected}, found {found}",
                    ErrorCategory.TRANSCODE,
                )
            self.log.debug(f"Verified {found} chapters in {job.output_path.name}")
        if self.collector is not None:
            return self.collector.integrate(job, outcome)
        return outcome
