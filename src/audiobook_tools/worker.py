"""Transcode worker -- one ffmpeg child process for one job.

The worker validates the output path, spawns ffmpeg with ``-progress
pipe:1``, turns the key=value progress blocks into a throttled fractional
progress callback, and guarantees the child is gone and any partial output
is deleted on every failure path (error, cancellation, stall).
"""

from __future__ import annotations

import subprocess
import tempfile
import threading
import time
from collections import deque
from pathlib import Path
from typing import Callable

from loguru import logger

from . import ffprobe
from .cancellation import CancellationToken
from .encoder import build_command, detect_encoder, resolve_bitrate
from .errors import (
    EncoderStalledError,
    ExternalToolError,
    OutputExistsError,
    TranscodeError,
    categorize_error,
)
from .models import ConversionJob, ErrorCategory, FileStatus, JobKind, JobOutcome

ProgressCallback = Callable[[float, "str | None"], None]

TERMINATE_GRACE_SECONDS = 5.0


def _noop_progress(progress: float, speed: str | None) -> None:
    pass


def parse_timestamp(value: str) -> float | None:
    """Parse ffmpeg ``HH:MM:SS.micro`` into seconds."""
    try:
        h, m, s = value.strip().split(":")
        return int(h) * 3600 + int(m) * 60 + float(s)
    except ValueError:
        return None


class ProgressReporter:
    """Turns ffmpeg ``-progress`` key/value pairs into throttled callbacks.

    Progress is encoded-time / total-duration, never decreases, and is
    published only when it moved by more than ``threshold`` since the last
    publication, or once at completion.
    """

    def __init__(
        self,
        total_seconds: float | None,
        callback: ProgressCallback,
        threshold: float = 0.02,
    ) -> None:
        self.total_seconds = total_seconds if total_seconds and total_seconds > 0 else None
        self.callback = callback
        self.threshold = threshold
        self.current = 0.0
        self.reported = 0.0
        self.speed: str | None = None
        self.finished = False

    def feed(self, key: str, value: str) -> None:
        value = value.strip()
        if key in ("out_time_us", "out_time_ms"):
            # ffmpeg reports microseconds under both keys
            if value.lstrip("-").isdigit():
                self._advance(int(value) / 1_000_000)
        elif key == "out_time":
            seconds = parse_timestamp(value)
            if seconds is not None:
                self._advance(seconds)
        elif key == "speed":
            self.speed = value if value and value != "N/A" else None
        elif key == "progress":
            if value == "end":
                self.finish()
            elif self.current - self.reported > self.threshold:
                self._emit(self.current)

    def _advance(self, seconds: float) -> None:
        if self.total_seconds is None or seconds <= 0:
            return
        self.current = max(self.current, min(seconds / self.total_seconds, 1.0))

    def _emit(self, value: float) -> None:
        self.reported = value
        self.callback(value, self.speed)

    def finish(self) -> None:
        if not self.finished:
            self.finished = True
            self.current = 1.0
            self._emit(1.0)


class _Watchdog(threading.Thread):
    """Terminates the child on cancellation or when output goes silent."""

    def __init__(
        self,
        proc: subprocess.Popen,
        token: CancellationToken,
        stall_timeout: float,
        poll_interval: float,
    ) -> None:
        super().__init__(daemon=True)
        self.proc = proc
        self.token = token
        self.stall_timeout = stall_timeout
        self.poll_interval = poll_interval
        self.stalled = False
        self._last_activity = time.monotonic()
        self._stop_event = threading.Event()

    def touch(self) -> None:
        self._last_activity = time.monotonic()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        while not self._stop_event.wait(self.poll_interval):
            if self.token.cancelled:
                terminate_process(self.proc)
                return
            idle = time.monotonic() - self._last_activity
            if self.stall_timeout > 0 and idle > self.stall_timeout:
                self.stalled = True
                terminate_process(self.proc)
                return


def terminate_process(proc: subprocess.Popen) -> None:
    """Terminate a child, escalating to kill after a grace period."""
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def _drain(stream, sink: deque) -> None:
    for line in stream:
        sink.append(line)


class TranscodeWorker:
    """Runs one ConversionJob through the external encoder.

    Attributes:
        ffmpeg: Encoder executable
        encoder: AAC encoder name; auto-detected when None
        progress_threshold: Minimum progress delta between callbacks
        stall_timeout: Seconds without progress output before the child is
            killed (0 disables the watchdog's stall check)
        work_dir: Parent of the per-job scratch directory; system temp
            when None
    """

    def __init__(
        self,
        ffmpeg: str = "ffmpeg",
        encoder: str | None = None,
        progress_threshold: float = 0.02,
        stall_timeout: float = 0.0,
        poll_interval: float = 0.25,
        work_dir: Path | None = None,
        log=None,
    ) -> None:
        self.ffmpeg = ffmpeg
        self.encoder = encoder
        self.progress_threshold = progress_threshold
        self.stall_timeout = stall_timeout
        self.poll_interval = poll_interval
        self.work_dir = work_dir
        self.log = log or logger.bind(stage="worker")

    def run(
        self,
        job: ConversionJob,
        on_progress: ProgressCallback | None = None,
        token: CancellationToken | None = None,
    ) -> JobOutcome:
        """Encode one job. Never raises for per-file problems.

        Returns a COMPLETED outcome with the output path, or a FAILED outcome
        whose ``error`` is the short reason (``AlreadyExists``,
        ``Cancelled by user``, ``Stalled``, or the encoder diagnostic).
        """
        token = token or CancellationToken()
        started = time.monotonic()
        owns_output = False
        try:
            if job.output_path.exists():
                raise OutputExistsError(job.output_path)
            owns_output = True
            self._transcode(job, on_progress or _noop_progress, token)
        except TranscodeError as e:
            return self._failed(job, e.reason, e.details, e.category, started, owns_output)
        except Exception as e:
            self.log.exception(f"Unexpected error converting {job.name}")
            return self._failed(
                job, str(e) or type(e).__name__, None,
                categorize_error(e), started, owns_output,
            )

        elapsed = time.monotonic() - started
        self.log.info(f"Converted {job.name} -> {job.output_path.name} in {elapsed:.1f}s")
        return JobOutcome(
            source_path=job.source_path,
            status=FileStatus.COMPLETED,
            output_path=job.output_path,
            elapsed=elapsed,
        )

    def _failed(
        self,
        job: ConversionJob,
        reason: str,
        details: str | None,
        category: ErrorCategory,
        started: float,
        owns_output: bool,
    ) -> JobOutcome:
        if owns_output:
            self._remove_partial(job.output_path)
        if category == ErrorCategory.CANCELLED:
            self.log.info(f"Cancelled: {job.name}")
        else:
            self.log.error(f"Failed: {job.name}: {reason}" + (f" ({details})" if details else ""))
        return JobOutcome(
            source_path=job.source_path,
            status=FileStatus.FAILED,
            error=reason,
            details=details,
            category=category,
            elapsed=time.monotonic() - started,
        )

    def _remove_partial(self, path: Path) -> None:
        if path.exists():
            try:
                path.unlink()
                self.log.debug(f"Removed partial output: {path}")
            except OSError as e:
                self.log.warning(f"Could not remove partial output {path}: {e}")

    def _total_duration(self, job: ConversionJob) -> float | None:
        if job.duration:
            return job.duration
        if job.kind == JobKind.MERGE and job.chapters:
            return sum(c.duration.total_seconds() for c in job.chapters)
        try:
            return ffprobe.get_duration(job.source_path)
        except (ValueError, OSError) as e:
            self.log.warning(f"Unknown duration for {job.name}, progress limited: {e}")
            return None

    def _transcode(
        self, job: ConversionJob, on_progress: ProgressCallback, token: CancellationToken,
    ) -> None:
        token.raise_if_cancelled()
        job.output_path.parent.mkdir(parents=True, exist_ok=True)
        if job.metadata is None and job.kind == JobKind.CONVERT:
            job.metadata = ffprobe.read_book_metadata(job.source_path)

        total = self._total_duration(job)
        encoder = self.encoder or detect_encoder(self.ffmpeg)
        bitrate = resolve_bitrate(job)

        with tempfile.TemporaryDirectory(prefix="audiobook-tools-", dir=self.work_dir) as aux:
            cmd = build_command(job, self.ffmpeg, encoder, bitrate, aux_dir=Path(aux))
            self.log.debug(f"ffmpeg command: {' '.join(cmd)}")
            reporter = ProgressReporter(total, on_progress, self.progress_threshold)
            self._execute(cmd, reporter, token)

        if not job.output_path.is_file() or job.output_path.stat().st_size == 0:
            raise TranscodeError("Conversion failed", f"Output file not created: {job.output_path}")
        reporter.finish()

    def _execute(
        self, cmd: list[str], reporter: ProgressReporter, token: CancellationToken,
    ) -> None:
        stderr_tail: deque[str] = deque(maxlen=40)
        with subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
        ) as proc:
            watchdog = _Watchdog(proc, token, self.stall_timeout, self.poll_interval)
            drain = threading.Thread(target=_drain, args=(proc.stderr, stderr_tail), daemon=True)
            drain.start()
            watchdog.start()
            try:
                for line in proc.stdout:
                    watchdog.touch()
                    key, sep, value = line.strip().partition("=")
                    if sep:
                        reporter.feed(key, value)
                    token.raise_if_cancelled()
                returncode = proc.wait()
            finally:
                watchdog.stop()
                terminate_process(proc)
                drain.join(timeout=1.0)

        if watchdog.stalled:
            raise EncoderStalledError(self.stall_timeout)
        token.raise_if_cancelled()
        if returncode != 0:
            raise ExternalToolError(
                "ffmpeg", returncode, "".join(stderr_tail)[-500:],
            )
