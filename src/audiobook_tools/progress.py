"""Per-file progress table and the overall progress stream.

The aggregator is the single writer of the per-file table. Workers and the
scheduler report through its methods (from any thread); consumers read
immutable ``ProcessingUpdate`` snapshots from a ``ProgressStream``.
"""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Callable, Iterator

from loguru import logger

from .models import (
    CANCELLED_BY_USER,
    FileProgressInfo,
    FileStatus,
    ProcessingUpdate,
    snapshot_table,
)

STAGE_PROCESSING = "processing"
STAGE_MERGING = "merging"
STAGE_COMPLETED = "completed"
STAGE_CANCELLED = "cancelled"

# Below this overall progress an ETA is too noisy to report
ETA_MIN_PROGRESS = 0.01


class ProgressStream:
    """Single-slot, last-value-wins channel of ProcessingUpdate snapshots.

    ``publish`` never blocks; a slow reader simply skips superseded
    snapshots. Iterating yields each new snapshot once and stops after
    ``close()`` once the final snapshot has been delivered.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._latest: ProcessingUpdate | None = None
        self._version = 0
        self._closed = False

    def publish(self, update: ProcessingUpdate) -> None:
        with self._cond:
            if self._closed:
                return
            self._latest = update
            self._version += 1
            self._cond.notify_all()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed

    def latest(self) -> ProcessingUpdate | None:
        with self._cond:
            return self._latest

    def __iter__(self) -> Iterator[ProcessingUpdate]:
        seen = 0
        while True:
            with self._cond:
                while self._version == seen and not self._closed:
                    self._cond.wait()
                if self._version == seen:
                    return
                seen = self._version
                update = self._latest
            yield update


class ProgressAggregator:
    """Folds per-file reports into overall progress, speed and ETA.

    Transitions publish immediately; in-flight progress and ticks are
    rate-limited to one publication per ``interval`` seconds.
    """

    def __init__(
        self,
        paths: list[Path] | list[str],
        stream: ProgressStream | None = None,
        interval: float = 1.0,
        stage: str = STAGE_PROCESSING,
        clock: Callable[[], float] = time.monotonic,
        log=None,
    ) -> None:
        self.stream = stream or ProgressStream()
        self.interval = interval
        self.stage = stage
        self._clock = clock
        self.log = log or logger.bind(stage="progress")
        self._lock = threading.Lock()
        self._table: dict[str, FileProgressInfo] = {
            str(p): FileProgressInfo() for p in paths
        }
        self._started_at = clock()
        self._last_publish: float | None = None
        self._overall = 0.0
        self._current_file: str | None = None

    @property
    def total(self) -> int:
        return len(self._table)

    def table(self) -> dict[str, FileProgressInfo]:
        with self._lock:
            return snapshot_table(self._table)

    # -- Reports --

    def file_started(self, path: Path | str) -> None:
        with self._lock:
            info = self._table[str(path)]
            info.status = FileStatus.CONVERTING
            info.progress = 0.0
            info.start_time = self._clock()
            self._current_file = str(path)
            update = self._snapshot()
        self._publish(update)

    def file_progress(self, path: Path | str, progress: float, speed: str | None = None) -> None:
        with self._lock:
            info = self._table[str(path)]
            if info.status != FileStatus.CONVERTING:
                return
            info.progress = max(info.progress, min(progress, 1.0))
            if speed:
                info.speed = speed
            self._touch(info)
            self._current_file = str(path)
            if not self._due():
                return
            update = self._snapshot()
        self._publish(update)

    def file_completed(self, path: Path | str) -> None:
        with self._lock:
            info = self._table[str(path)]
            info.status = FileStatus.COMPLETED
            info.progress = 1.0
            self._touch(info)
            update = self._snapshot()
        self._publish(update)

    def file_failed(self, path: Path | str, message: str) -> None:
        with self._lock:
            info = self._table[str(path)]
            info.status = FileStatus.FAILED
            info.error_message = message
            self._touch(info)
            update = self._snapshot()
        self._publish(update)

    def cancel_pending(self) -> None:
        """Mark every file that never started as failed ``Cancelled by user``.

        In-flight files keep running until their worker reports.
        """
        with self._lock:
            for info in self._table.values():
                if info.status == FileStatus.WAITING:
                    info.status = FileStatus.FAILED
                    info.error_message = CANCELLED_BY_USER
                    self._touch(info)
            update = self._snapshot()
        self._publish(update)

    def tick(self) -> None:
        """Periodic heartbeat so elapsed time and ETA move between reports."""
        with self._lock:
            for info in self._table.values():
                if info.status == FileStatus.CONVERTING:
                    self._touch(info)
            if not self._due():
                return
            update = self._snapshot()
        self._publish(update)

    def finish(self, stage: str = STAGE_COMPLETED) -> ProcessingUpdate:
        """Publish the terminal snapshot and close the stream."""
        with self._lock:
            self.stage = stage
            update = self._snapshot()
        self._publish(update)
        self.stream.close()
        return update

    # -- Internals (callers hold the lock) --

    def _touch(self, info: FileProgressInfo) -> None:
        if info.start_time is not None:
            info.elapsed_time = self._clock() - info.start_time

    def _due(self) -> bool:
        now = self._clock()
        return self._last_publish is None or now - self._last_publish >= self.interval

    def _snapshot(self) -> ProcessingUpdate:
        now = self._clock()
        self._last_publish = now
        elapsed = now - self._started_at

        failed = completed = active = 0
        in_flight = 0.0
        speed = None
        for info in self._table.values():
            if info.status == FileStatus.COMPLETED:
                completed += 1
            elif info.status == FileStatus.FAILED:
                failed += 1
            elif info.status == FileStatus.CONVERTING:
                active += 1
                in_flight += info.progress
                speed = info.speed or speed
        finished = completed + failed

        if self.total:
            raw = (finished + in_flight) / self.total
            self._overall = max(self._overall, min(raw, 1.0))

        eta = None
        if self._overall > ETA_MIN_PROGRESS:
            eta = max(0.0, elapsed * (1.0 / self._overall - 1.0))

        return ProcessingUpdate(
            stage=self.stage,
            progress=self._overall,
            speed=speed,
            estimated_time_remaining=eta,
            current_file=self._current_file,
            completed_files=completed,
            failed_files=failed,
            total_files=self.total,
            active_workers=active,
            elapsed_time=elapsed,
            per_file=snapshot_table(self._table),
        )

    def _publish(self, update: ProcessingUpdate) -> None:
        self.stream.publish(update)
        self.log.trace(
            f"{update.stage}: {update.progress:.1%} "
            f"({update.completed_files}+{update.failed_files}/{update.total_files})"
        )
