"""Bounded-parallelism job scheduler.

Runs at most ``parallel_jobs`` encoder jobs at once, starting queued jobs in
FIFO order with a short stagger between consecutive starts. Per-file
failures never abort the batch.
"""

from __future__ import annotations

import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import TYPE_CHECKING, Callable

from loguru import logger

from .errors import categorize_error
from .models import (
    CANCELLED_BY_USER,
    ConversionJob,
    ErrorCategory,
    FileStatus,
    JobOutcome,
)

if TYPE_CHECKING:
    from .cancellation import CancellationToken
    from .progress import ProgressAggregator
    from .worker import TranscodeWorker

PostProcess = Callable[[ConversionJob, JobOutcome], JobOutcome]


class JobScheduler:
    """Dispatches ConversionJobs onto a bounded thread pool.

    Attributes:
        worker: Runs one job; must not raise for per-file problems
        start_delay: Seconds between consecutive job starts
        tick_interval: Seconds between aggregator heartbeats while waiting
        post_process: Optional hook run in the worker thread after a
            successful encode (library integration); may downgrade the outcome
    """

    def __init__(
        self,
        worker: TranscodeWorker,
        start_delay: float = 0.15,
        tick_interval: float = 1.0,
        post_process: PostProcess | None = None,
        log=None,
    ) -> None:
        self.worker = worker
        self.start_delay = start_delay
        self.tick_interval = tick_interval
        self.post_process = post_process
        self.log = log or logger.bind(stage="scheduler")

    def run(
        self,
        jobs: list[ConversionJob],
        parallel_jobs: int,
        token: CancellationToken,
        aggregator: ProgressAggregator,
    ) -> list[JobOutcome]:
        """Run every job and return one outcome per job, in submission order."""
        if not jobs:
            self.log.warning("No jobs to run")
            return []

        max_workers = max(1, min(parallel_jobs, len(jobs)))
        self.log.info(f"Starting {len(jobs)} job(s), parallel_jobs={max_workers}")

        queued: deque[tuple[int, ConversionJob]] = deque(enumerate(jobs))
        active: dict[Future, tuple[int, ConversionJob]] = {}
        outcomes: dict[int, JobOutcome] = {}

        with ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="transcode",
        ) as executor:
            while queued or active:
                if token.cancelled and queued:
                    self._cancel_queued(queued, outcomes, aggregator)

                started = 0
                while queued and len(active) < max_workers and not token.cancelled:
                    # Stagger consecutive starts; cancellation cuts the wait short
                    if started and token.wait(self.start_delay):
                        break
                    index, job = queued.popleft()
                    aggregator.file_started(job.source_path)
                    future = executor.submit(self._run_single_safe, job, token, aggregator)
                    active[future] = (index, job)
                    started += 1
                    self.log.debug(
                        f"Started {job.name} (active={len(active)}/{max_workers}, "
                        f"queued={len(queued)})"
                    )

                if not active:
                    continue

                done, _ = wait(active.keys(), timeout=self.tick_interval, return_when=FIRST_COMPLETED)
                if not done:
                    aggregator.tick()
                    continue

                for future in done:
                    index, job = active.pop(future)
                    outcome = future.result()
                    outcomes[index] = outcome
                    self._record(job, outcome, aggregator)

        return [outcomes[i] for i in range(len(jobs))]

    def _run_single_safe(
        self,
        job: ConversionJob,
        token: CancellationToken,
        aggregator: ProgressAggregator,
    ) -> JobOutcome:
        """Run one job; an unexpected exception becomes that job's failure."""
        started = time.monotonic()
        path = job.source_path

        def on_progress(progress: float, speed: str | None) -> None:
            aggregator.file_progress(path, progress, speed)

        try:
            outcome = self.worker.run(job, on_progress=on_progress, token=token)
            if outcome.succeeded and self.post_process is not None:
                outcome = self.post_process(job, outcome)
            return outcome
        except Exception as e:
            self.log.error(f"Error processing {job.name}: {e}")
            return JobOutcome(
                source_path=path,
                status=FileStatus.FAILED,
                error=str(e) or type(e).__name__,
                category=categorize_error(e),
                elapsed=time.monotonic() - started,
            )

    def _record(
        self, job: ConversionJob, outcome: JobOutcome, aggregator: ProgressAggregator,
    ) -> None:
        if outcome.succeeded:
            aggregator.file_completed(job.source_path)
            self.log.info(f"Completed: {job.name}")
        else:
            aggregator.file_failed(job.source_path, outcome.error or "Conversion failed")
            self.log.debug(f"Recorded failure: {job.name}: {outcome.error}")

    def _cancel_queued(
        self,
        queued: deque[tuple[int, ConversionJob]],
        outcomes: dict[int, JobOutcome],
        aggregator: ProgressAggregator,
    ) -> None:
        self.log.info(f"Cancelling {len(queued)} queued job(s)")
        while queued:
            index, job = queued.popleft()
            outcomes[index] = JobOutcome(
                source_path=job.source_path,
                status=FileStatus.FAILED,
                error=CANCELLED_BY_USER,
                category=ErrorCategory.CANCELLED,
            )
        aggregator.cancel_pending()
