"""Tests for service.py -- validation, state machine, batch and merge runs."""

import threading
from datetime import timedelta
from unittest.mock import patch

import pytest
from conftest import FakeWorker, make_sources, wait_until

from audiobook_tools.chapters import rebuild_offsets
from audiobook_tools.config import ToolsConfig
from audiobook_tools.errors import (
    BatchValidationError,
    ChapterPlanError,
    ConfigError,
    EnvironmentValidationError,
    OperationInProgressError,
)
from audiobook_tools.library_db import LibraryDB
from audiobook_tools.models import (
    CANCELLED_BY_USER,
    AudiobookFile,
    AudioProcessingConfig,
    BatchState,
    BookMetadata,
    ChapterInfo,
    ErrorCategory,
    SystemCapabilities,
)
from audiobook_tools.progress import STAGE_CANCELLED, STAGE_COMPLETED
from audiobook_tools.service import ConversionService, output_path_for

CAPS = SystemCapabilities(cpu_cores=8, total_memory_mb=16384, platform="Linux")


@pytest.fixture(autouse=True)
def _tools_found():
    with patch("audiobook_tools.service.find_executable", side_effect=lambda b: f"/usr/bin/{b}"):
        yield


def _service(tmp_path, worker=None, library=None, **overrides):
    overrides.setdefault("start_delay", 0)
    overrides.setdefault("progress_interval", 0.02)
    config = ToolsConfig(log_dir=tmp_path / "logs", work_dir=tmp_path / "work", **overrides)
    return ConversionService(config, library=library, capabilities=CAPS,
                             worker=worker or FakeWorker())


def _books(tmp_path, count=3):
    return make_sources(tmp_path / "in", [f"book{i}.mp3" for i in range(1, count + 1)])


class TestValidateEnvironment:
    def test_valid(self, tmp_path):
        result = _service(tmp_path).validate_environment()
        assert result.is_valid
        assert result.issues == []
        assert result.recommendations

    def test_missing_encoder(self, tmp_path):
        with patch("audiobook_tools.service.find_executable", return_value=None):
            result = _service(tmp_path).validate_environment()
        assert not result.is_valid
        assert result.issues == ["ffmpeg not found: ffmpeg", "ffprobe not found: ffprobe"]

    def test_start_raises_before_scheduling(self, tmp_path):
        worker = FakeWorker()
        service = _service(tmp_path, worker)
        with patch("audiobook_tools.service.find_executable", return_value=None):
            with pytest.raises(EnvironmentValidationError) as exc_info:
                service.start_batch(_books(tmp_path))
        assert "ffmpeg not found" in exc_info.value.issues[0]
        assert worker.started == []
        assert service.state == BatchState.IDLE

    @patch("audiobook_tools.service.check_disk_space", return_value=False)
    def test_insufficient_disk_space(self, mock_space, tmp_path):
        service = _service(tmp_path)
        with pytest.raises(EnvironmentValidationError, match="Insufficient disk space"):
            service.start_batch(_books(tmp_path))
        assert service.state == BatchState.IDLE


class TestOptimalConfig:
    def test_auto_parallelism(self, tmp_path):
        assert _service(tmp_path).optimal_config(file_count=10).parallel_jobs == 3

    def test_merge_is_single_job(self, tmp_path):
        assert _service(tmp_path).optimal_config("merge", 10).parallel_jobs == 1

    def test_user_setting_clamped(self, tmp_path):
        config = _service(tmp_path, parallel_jobs=64, bitrate="96k").optimal_config(file_count=100)
        assert config.parallel_jobs == 8
        assert config.bitrate == "96k"


class TestBatch:
    def test_end_to_end(self, tmp_path):
        books = _books(tmp_path, 4)
        service = _service(tmp_path)
        handle = service.start_batch(books)
        result = handle.wait(10)
        assert result.success
        assert result.success_count == 4
        assert sorted(result.output_files) == sorted(str(b.with_suffix(".m4b")) for b in books)
        assert service.state == BatchState.COMPLETED
        final = handle.progress.latest()
        assert final.stage == STAGE_COMPLETED
        assert final.progress == 1.0
        assert handle.progress.closed

    def test_accepts_audiobook_files(self, tmp_path):
        books = _books(tmp_path, 1)
        meta = BookMetadata(title="One")
        handle = _service(tmp_path).start_batch([AudiobookFile(books[0], metadata=meta)])
        assert handle.wait(10).success

    def test_partial_failure(self, tmp_path):
        books = _books(tmp_path, 3)
        books[1].with_suffix(".m4b").write_bytes(b"taken")
        result = _service(tmp_path).start_batch(books).wait(10)
        assert result.success is False
        assert result.success_count == 2
        assert [e.message for e in result.errors] == ["AlreadyExists"]

    def test_output_dir(self, tmp_path):
        books = _books(tmp_path, 2)
        out_dir = tmp_path / "out"
        config = AudioProcessingConfig(parallel_jobs=2, output_dir=out_dir)
        result = _service(tmp_path).start_batch(books, config).wait(10)
        assert result.success
        assert (out_dir / "book1.m4b").exists()
        assert not books[0].with_suffix(".m4b").exists()

    def test_requested_parallelism_clamped(self, tmp_path):
        worker = FakeWorker()
        books = _books(tmp_path, 10)
        result = _service(tmp_path, worker).start_batch(
            books, AudioProcessingConfig(parallel_jobs=50),
        ).wait(10)
        assert result.statistics["parallel_jobs"] == 8
        assert worker.max_active <= 8

    def test_empty_batch(self, tmp_path):
        service = _service(tmp_path)
        result = service.start_batch([]).wait(5)
        assert result.success
        assert result.output_files == ()
        assert service.state == BatchState.COMPLETED

    def test_library_swapped(self, tmp_path):
        books = _books(tmp_path, 2)
        db = LibraryDB(tmp_path / "library.db")
        try:
            for b in books:
                db.add(b)
            result = _service(tmp_path, library=db).start_batch(books).wait(10)
            assert result.success
            assert [r["format"] for r in db.list_books()] == ["m4b", "m4b"]
        finally:
            db.close()

    def test_can_run_again(self, tmp_path):
        service = _service(tmp_path)
        service.start_batch(_books(tmp_path / "first", 1)).wait(10)
        result = service.start_batch(_books(tmp_path / "second", 1)).wait(10)
        assert result.success

    def test_duplicate_source_rejected(self, tmp_path):
        book = _books(tmp_path, 1)[0]
        worker = FakeWorker()
        service = _service(tmp_path, worker)
        with pytest.raises(BatchValidationError, match="Duplicate source"):
            service.start_batch([book, book])
        assert worker.started == []
        assert service.state == BatchState.IDLE

    def test_colliding_outputs_rejected(self, tmp_path):
        first = make_sources(tmp_path / "a", ["book.mp3"])[0]
        second = make_sources(tmp_path / "b", ["book.mp3"])[0]
        config = AudioProcessingConfig(output_dir=tmp_path / "out")
        with pytest.raises(BatchValidationError, match="would both write"):
            _service(tmp_path).start_batch([first, second], config)


class TestStateMachine:
    def test_second_operation_rejected(self, tmp_path):
        books = _books(tmp_path, 2)
        gates = {b.name: threading.Event() for b in books}
        service = _service(tmp_path, FakeWorker(gates=gates))
        handle = service.start_batch(books)
        try:
            assert service.state == BatchState.RUNNING
            with pytest.raises(OperationInProgressError):
                service.start_batch(books)
        finally:
            for gate in gates.values():
                gate.set()
        assert handle.wait(10).success

    def test_cancel_when_idle(self, tmp_path):
        assert _service(tmp_path).cancel() is False

    def test_idle_once_progress_drained(self, tmp_path):
        service = _service(tmp_path)
        handle = service.start_batch(_books(tmp_path / "first", 2))
        for _ in handle.progress:
            pass
        assert service.state == BatchState.COMPLETED
        assert service.start_batch(_books(tmp_path / "second", 1)).wait(10).success


class TestCancel:
    def test_cancel_mid_batch(self, tmp_path):
        books = _books(tmp_path, 4)
        gates = {books[0].name: threading.Event()}
        worker = FakeWorker(gates=gates)
        service = _service(tmp_path, worker)
        handle = service.start_batch(books, AudioProcessingConfig(parallel_jobs=1))
        assert wait_until(lambda: worker.started == ["book1.mp3"])

        assert service.cancel() is True
        assert service.cancel() is False
        result = handle.wait(10)

        assert result.success is False
        assert result.cancelled_count == 4
        assert all(e.message == CANCELLED_BY_USER for e in result.errors)
        assert all(e.category == ErrorCategory.CANCELLED for e in result.errors)
        assert worker.started == ["book1.mp3"]
        assert service.state == BatchState.CANCELLED
        assert handle.progress.latest().stage == STAGE_CANCELLED

    def test_handle_cancel(self, tmp_path):
        books = _books(tmp_path, 2)
        gates = {b.name: threading.Event() for b in books}
        handle = _service(tmp_path, FakeWorker(gates=gates)).start_batch(books)
        handle.cancel()
        result = handle.wait(10)
        assert result.error_count == 2


class TestMerge:
    def _chapters(self, tmp_path):
        files = make_sources(tmp_path / "Dune", ["01.mp3", "02.mp3"])
        return rebuild_offsets([
            ChapterInfo(f, f"Chapter {i + 1}", timedelta(0), timedelta(minutes=5), i)
            for i, f in enumerate(files)
        ])

    @patch("audiobook_tools.merger.ffprobe.count_chapters", return_value=2)
    def test_start_merge(self, mock_count, tmp_path):
        out = tmp_path / "Dune.m4b"
        service = _service(tmp_path)
        handle = service.start_merge(self._chapters(tmp_path), out, BookMetadata(title="Dune"))
        result = handle.wait(10)
        assert result.success
        assert result.output_files == (str(out),)
        assert result.statistics["parallel_jobs"] == 1
        assert service.state == BatchState.COMPLETED

    def test_bad_plan_rejected_before_start(self, tmp_path):
        service = _service(tmp_path)
        with pytest.raises(ChapterPlanError):
            service.start_merge([], tmp_path / "out.m4b")
        assert service.state == BatchState.IDLE


def test_output_path_for(tmp_path):
    src = tmp_path / "a" / "book.mp3"
    assert output_path_for(src, AudioProcessingConfig()) == tmp_path / "a" / "book.m4b"
    config = AudioProcessingConfig(output_dir=tmp_path / "out")
    assert output_path_for(src, config) == tmp_path / "out" / "book.m4b"


def test_invalid_settings_rejected(tmp_path):
    with pytest.raises(ConfigError, match="parallel_jobs"):
        _service(tmp_path, parallel_jobs=-2)


def test_worker_uses_work_dir(tmp_path):
    config = ToolsConfig(log_dir=tmp_path / "logs", work_dir=tmp_path / "work")
    service = ConversionService(config, capabilities=CAPS)
    assert service.worker.work_dir == tmp_path / "work"
    assert (tmp_path / "work").is_dir()
