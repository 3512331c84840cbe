"""Shared fixtures: clean config environment and fake encoder workers."""

import threading
import time
from pathlib import Path

import pytest

from audiobook_tools.config import ToolsConfig
from audiobook_tools.models import (
    ALREADY_EXISTS,
    CANCELLED_BY_USER,
    ErrorCategory,
    FileStatus,
    JobOutcome,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Remove config env vars so tests see actual defaults."""
    for name in ToolsConfig.model_fields:
        monkeypatch.delenv(name.upper(), raising=False)


class FakeWorker:
    """Stands in for TranscodeWorker without spawning ffmpeg.

    Writes the output file, reports a couple of progress steps, and tracks
    how many jobs run at once. ``gates`` maps a source name to an Event the
    job waits on before finishing; ``fail`` maps a source name to an error.
    """

    def __init__(self, delay: float = 0.02, gates=None, fail=None):
        self.delay = delay
        self.gates = gates or {}
        self.fail = fail or {}
        self.lock = threading.Lock()
        self.active = 0
        self.max_active = 0
        self.started: list[str] = []
        self.finished: list[str] = []

    def run(self, job, on_progress=None, token=None):
        name = job.source_path.name
        with self.lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.started.append(name)
        try:
            if job.output_path.exists():
                return self._failed(job, ALREADY_EXISTS)
            gate = self.gates.get(name)
            if gate is not None:
                while not gate.wait(0.01):
                    if token is not None and token.cancelled:
                        return self._failed(job, CANCELLED_BY_USER, ErrorCategory.CANCELLED)
            else:
                time.sleep(self.delay)
            if token is not None and token.cancelled:
                return self._failed(job, CANCELLED_BY_USER, ErrorCategory.CANCELLED)
            if name in self.fail:
                return self._failed(job, self.fail[name])
            if on_progress is not None:
                on_progress(0.5, "2.0x")
            job.output_path.parent.mkdir(parents=True, exist_ok=True)
            job.output_path.write_bytes(b"m4b")
            if on_progress is not None:
                on_progress(1.0, "2.0x")
            return JobOutcome(
                source_path=job.source_path,
                status=FileStatus.COMPLETED,
                output_path=job.output_path,
            )
        finally:
            with self.lock:
                self.active -= 1
                self.finished.append(name)

    def _failed(self, job, error, category=ErrorCategory.TRANSCODE):
        return JobOutcome(
            source_path=job.source_path,
            status=FileStatus.FAILED,
            error=error,
            category=category,
        )


@pytest.fixture
def fake_worker():
    return FakeWorker()


def make_sources(folder: Path, names: list[str]) -> list[Path]:
    folder.mkdir(parents=True, exist_ok=True)
    paths = []
    for name in names:
        p = folder / name
        p.write_bytes(b"ID3fake")
        paths.append(p)
    return paths


def wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()
