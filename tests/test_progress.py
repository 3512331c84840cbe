"""Tests for progress.py -- aggregation, throttling, ETA, and the stream."""

import threading

import pytest

from audiobook_tools.models import CANCELLED_BY_USER, FileStatus, ProcessingUpdate
from audiobook_tools.progress import (
    STAGE_CANCELLED,
    ProgressAggregator,
    ProgressStream,
)


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def _aggregator(clock, paths=("a.mp3", "b.mp3", "c.mp3", "d.mp3"), interval=1.0):
    return ProgressAggregator(list(paths), interval=interval, clock=clock)


class TestOverallProgress:
    def test_counts_finished_and_in_flight(self, clock):
        agg = _aggregator(clock)
        agg.file_started("a.mp3")
        agg.file_completed("a.mp3")
        agg.file_started("b.mp3")
        clock.advance(1.0)
        agg.file_progress("b.mp3", 0.5)
        update = agg.stream.latest()
        assert update.progress == pytest.approx(1.5 / 4)
        assert update.completed_files == 1
        assert update.active_workers == 1

    def test_failures_count_as_finished(self, clock):
        agg = _aggregator(clock, paths=("a.mp3", "b.mp3"))
        agg.file_started("a.mp3")
        agg.file_failed("a.mp3", "AlreadyExists")
        update = agg.stream.latest()
        assert update.progress == 0.5
        assert update.failed_files == 1
        assert update.per_file["a.mp3"].error_message == "AlreadyExists"

    def test_never_decreases(self, clock):
        agg = _aggregator(clock, paths=("a.mp3",), interval=0)
        agg.file_started("a.mp3")
        agg.file_progress("a.mp3", 0.6)
        agg.file_progress("a.mp3", 0.3)
        assert agg.stream.latest().progress == pytest.approx(0.6)

    def test_progress_ignored_after_terminal(self, clock):
        agg = _aggregator(clock, paths=("a.mp3",), interval=0)
        agg.file_started("a.mp3")
        agg.file_failed("a.mp3", "boom")
        agg.file_progress("a.mp3", 0.9)
        assert agg.table()["a.mp3"].status == FileStatus.FAILED


class TestThrottling:
    def test_progress_rate_limited(self, clock):
        agg = _aggregator(clock)
        seen = []
        agg.stream.publish = seen.append
        agg.file_started("a.mp3")
        agg.file_progress("a.mp3", 0.1)
        agg.file_progress("a.mp3", 0.2)
        clock.advance(1.0)
        agg.file_progress("a.mp3", 0.3)
        assert len(seen) == 2
        # Latest worker values still land in the table
        assert agg.table()["a.mp3"].progress == 0.3

    def test_transitions_always_publish(self, clock):
        agg = _aggregator(clock)
        seen = []
        agg.stream.publish = seen.append
        agg.file_started("a.mp3")
        agg.file_started("b.mp3")
        agg.file_completed("a.mp3")
        agg.file_failed("b.mp3", "x")
        assert len(seen) == 4

    def test_tick_rate_limited(self, clock):
        agg = _aggregator(clock)
        seen = []
        agg.stream.publish = seen.append
        agg.file_started("a.mp3")
        agg.tick()
        clock.advance(1.5)
        agg.tick()
        assert len(seen) == 2
        assert seen[-1].per_file["a.mp3"].elapsed_time == 1.5


class TestEta:
    def test_none_at_start(self, clock):
        agg = _aggregator(clock)
        agg.file_started("a.mp3")
        assert agg.stream.latest().estimated_time_remaining is None

    def test_extrapolates_from_elapsed(self, clock):
        agg = _aggregator(clock, paths=("a.mp3", "b.mp3"))
        agg.file_started("a.mp3")
        clock.advance(30.0)
        agg.file_completed("a.mp3")
        update = agg.stream.latest()
        # 50% done after 30s
        assert update.estimated_time_remaining == pytest.approx(30.0)
        assert update.eta_seconds == 30


class TestCancelPending:
    def test_marks_waiting_only(self, clock):
        agg = _aggregator(clock, paths=("a.mp3", "b.mp3", "c.mp3"))
        agg.file_started("a.mp3")
        agg.cancel_pending()
        table = agg.table()
        assert table["a.mp3"].status == FileStatus.CONVERTING
        assert table["b.mp3"].status == FileStatus.FAILED
        assert table["c.mp3"].error_message == CANCELLED_BY_USER


class TestFinish:
    def test_closes_stream(self, clock):
        agg = _aggregator(clock, paths=("a.mp3",))
        final = agg.finish(STAGE_CANCELLED)
        assert final.stage == STAGE_CANCELLED
        assert agg.stream.closed


class TestSnapshots:
    def test_snapshot_not_shared(self, clock):
        agg = _aggregator(clock, paths=("a.mp3",), interval=0)
        agg.file_started("a.mp3")
        first = agg.stream.latest()
        agg.file_progress("a.mp3", 0.8)
        assert first.per_file["a.mp3"].progress == 0.0


class TestProgressStream:
    def test_last_value_wins(self):
        stream = ProgressStream()
        for i in range(5):
            stream.publish(ProcessingUpdate(stage="s", progress=i / 10))
        stream.close()
        assert [u.progress for u in stream] == [0.4]

    def test_publish_after_close_dropped(self):
        stream = ProgressStream()
        stream.publish(ProcessingUpdate(stage="s", progress=0.1))
        stream.close()
        stream.publish(ProcessingUpdate(stage="s", progress=0.9))
        assert stream.latest().progress == 0.1

    def test_reader_sees_final_update(self):
        stream = ProgressStream()
        received = []

        def reader():
            for update in stream:
                received.append(update.progress)

        t = threading.Thread(target=reader)
        t.start()
        stream.publish(ProcessingUpdate(stage="s", progress=0.5))
        stream.publish(ProcessingUpdate(stage="completed", progress=1.0))
        stream.close()
        t.join(timeout=5)
        assert not t.is_alive()
        assert received[-1] == 1.0
        assert received == sorted(received)

    def test_empty_closed_stream(self):
        stream = ProgressStream()
        stream.close()
        assert list(stream) == []
