"""Post-conversion library integration and final result assembly."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

from .errors import LibraryUpdateError
from .models import (
    ConversionJob,
    ErrorCategory,
    JobKind,
    JobOutcome,
    ProcessingError,
    ProcessingResult,
)

if TYPE_CHECKING:
    from .library_db import LibraryDB


class ConversionResultCollector:
    """Integrates finished outputs into the library and builds the result.

    Attributes:
        library: Library to update; None skips integration
        delete_source: Remove the source file once the library points at
            the new output
    """

    def __init__(
        self,
        library: LibraryDB | None = None,
        delete_source: bool = False,
        log=None,
    ) -> None:
        self.library = library
        self.delete_source = delete_source
        self.log = log or logger.bind(stage="collector")

    def integrate(self, job: ConversionJob, outcome: JobOutcome) -> JobOutcome:
        """Swap the library entry from source to output for a completed job.

        A failed integration deletes the new output and downgrades the
        outcome to failed, so a file counts as successful only when it is
        both produced and registered.
        """
        if not outcome.succeeded:
            return outcome

        output = outcome.output_path or job.output_path
        if not output.is_file():
            return outcome.as_failure(
                "Output file missing after conversion", str(output),
                ErrorCategory.TRANSCODE,
            )

        if self.library is not None:
            try:
                self._register(job, output)
            except (LibraryUpdateError, sqlite3.Error) as e:
                self.log.error(f"Library update failed for {job.name}: {e}")
                self._discard(output)
                return outcome.as_failure(
                    "Failed to update library", str(e), ErrorCategory.INTEGRATION,
                )

        if self.delete_source:
            self._delete_sources(job)
        return outcome

    def _register(self, job: ConversionJob, output: Path) -> None:
        if job.kind == JobKind.MERGE:
            self.library.add(output, job.metadata, job.duration)
            for chapter in job.chapters:
                self.library.remove(Path(chapter.file_path))
        else:
            self.library.replace_file(job.source_path, output, job.metadata)

    def _discard(self, output: Path) -> None:
        try:
            output.unlink(missing_ok=True)
        except OSError as e:
            self.log.warning(f"Could not remove unregistered output {output}: {e}")

    def _delete_sources(self, job: ConversionJob) -> None:
        sources = [c.file_path for c in job.chapters] if job.chapters else [job.source_path]
        for src in sources:
            try:
                Path(src).unlink()
                self.log.debug(f"Deleted source {Path(src).name}")
            except OSError as e:
                self.log.warning(f"Could not delete source {src}: {e}")

    def collect(
        self,
        outcomes: list[JobOutcome],
        elapsed: float,
        parallel_jobs: int = 1,
    ) -> ProcessingResult:
        """Fold per-job outcomes into the terminal ProcessingResult.

        ``success`` is True only when no file failed, cancellations included.
        """
        output_files = tuple(str(o.output_path) for o in outcomes if o.succeeded)
        errors = tuple(
            ProcessingError(
                file_path=str(o.source_path),
                message=o.error or "Conversion failed",
                details=o.details,
                category=o.category or ErrorCategory.TRANSCODE,
            )
            for o in outcomes
            if not o.succeeded
        )
        total = len(outcomes)
        statistics = {
            "total_files": total,
            "successful_files": len(output_files),
            "failed_files": len(errors),
            "cancelled_files": sum(1 for e in errors if e.category == ErrorCategory.CANCELLED),
            "parallel_jobs": parallel_jobs,
            "average_time_per_file": elapsed / total if total else 0.0,
        }
        result = ProcessingResult(
            success=not errors,
            output_files=output_files,
            errors=errors,
            total_time=elapsed,
            statistics=statistics,
        )
        self.log.info(
            f"Batch finished: {result.success_count} succeeded, "
            f"{result.error_count} failed in {elapsed:.1f}s"
        )
        return result
