"""
Unit tests for RunTracker and ErrorLog.
"""

from datetime import datetime, timedelta, timezone

import pytest

from src.ingestion.errors import (
    NormalizationError,
    NormalizationErrorKind,
    RunFailedError,
    StoreUnavailableError,
)
from src.ingestion.tracking import (
    ErrorLog,
    RunClosedError,
    RunTracker,
    error_kind,
    snapshot_payload,
)
from src.schemas.runs import (
    ErrorSeverity,
    ErrorStage,
    RunCounts,
    RunStage,
    RunStatus,
)

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    """Clock advancing one second per call."""
    ticks = (T0 + timedelta(seconds=n) for n in range(1000))
    return lambda: next(ticks)


@pytest.fixture
def tracker(memory_store, event_sink, clock):
    return RunTracker(memory_store, sink=event_sink, clock=clock)


class TestRunTracker:
    """Tests for the run lifecycle."""

    def test_start_saves_pending_run(self, tracker, memory_store, event_sink):
        run = tracker.start("test-venue")
        assert run.status == RunStatus.RUNNING.value
        assert run.stage == RunStage.PENDING.value
        assert run.started_at == T0
        assert memory_store.get_run(run.run_id) is not None
        assert event_sink.named("run.started")[0].payload["run_id"] == run.run_id

    def test_advance(self, tracker, event_sink):
        run = tracker.start("test-venue")
        tracker.advance(run, RunStage.FETCHING)
        assert run.stage == "fetching"
        assert event_sink.named("run.stage")[0].stage == "fetching"

    def test_close_completed(self, tracker, memory_store):
        run = tracker.start("test-venue")
        tracker.close(run, RunCounts(scraped=2, created=2))
        assert run.status == RunStatus.COMPLETED.value
        assert run.stage == RunStage.COMPLETED.value
        assert run.duration_seconds == 1.0
        assert memory_store.get_run(run.run_id).status == "completed"

    def test_close_partial_on_failed_records(self, tracker):
        run = tracker.start("test-venue")
        tracker.close(run, RunCounts(scraped=2, created=1, failed=1))
        assert run.status == RunStatus.PARTIAL.value
        assert run.stage == RunStage.PARTIALLY_FAILED.value

    def test_close_partial_when_degraded(self, tracker):
        run = tracker.start("test-venue")
        tracker.close(run, RunCounts(scraped=1, created=1), degraded=True)
        assert run.status == RunStatus.PARTIAL.value

    def test_close_failed(self, tracker, event_sink):
        run = tracker.start("test-venue")
        tracker.close(run, RunCounts(), fatal=StoreUnavailableError("db down"))
        assert run.status == RunStatus.FAILED.value
        assert run.error == "db down"
        assert run.error_kind == "StoreUnavailableError"
        [finished] = event_sink.named("run.finished")
        assert finished.level == "error"

    def test_closes_exactly_once(self, tracker):
        run = tracker.start("test-venue")
        tracker.close(run, RunCounts())
        with pytest.raises(RunClosedError):
            tracker.close(run, RunCounts())
        with pytest.raises(RunClosedError):
            tracker.advance(run, RunStage.FETCHING)

    def test_close_survives_unavailable_store(self, tracker, memory_store):
        run = tracker.start("test-venue")
        memory_store.available = False
        closed = tracker.close(run, RunCounts(), fatal=StoreUnavailableError("gone"))
        assert closed.is_closed
        assert closed.status == "failed"

    def test_start_fails_and_closes_same_run(self, tracker, memory_store, event_sink):
        memory_store.available = False
        with pytest.raises(RunFailedError) as exc_info:
            tracker.start("test-venue")

        run = exc_info.value.run
        assert isinstance(exc_info.value.cause, StoreUnavailableError)
        assert run.status == "failed"
        [started] = event_sink.named("run.started")
        [finished] = event_sink.named("run.finished")
        assert started.payload["run_id"] == finished.payload["run_id"] == run.run_id

    def test_unbalanced_counts_logged(self, tracker, caplog):
        run = tracker.start("test-venue")
        with caplog.at_level("ERROR"):
            tracker.close(run, RunCounts(scraped=3, created=1))
        assert "do not balance" in caplog.text

    def test_history(self, tracker):
        first = tracker.start("test-venue")
        second = tracker.start("test-venue")
        tracker.start("other")
        assert [r.run_id for r in tracker.history("test-venue")] == [
            second.run_id,
            first.run_id,
        ]
        assert tracker.get(first.run_id).run_id == first.run_id


class TestErrorLog:
    def test_record(self, tracker, memory_store, event_sink):
        run = tracker.start("test-venue")
        log = ErrorLog(memory_store, sink=event_sink)
        error = NormalizationError(
            NormalizationErrorKind.INVALID_DATE, "bad date", field="date"
        )
        entry = log.record(
            run, ErrorStage.NORMALIZE, error, raw_payload={"date": "whenever"}
        )

        assert entry.kind == "InvalidDate"
        assert entry.severity == ErrorSeverity.LOW.value
        assert entry.raw_payload == {"date": "whenever"}
        assert log.for_run(run.run_id) == [entry]
        [event] = event_sink.named("record.failed")
        assert event.stage == "normalize"
        assert event.level == "warning"
        assert event.payload["persisted"] is True

    def test_unwritable_entry_reported_as_not_persisted(
        self, tracker, memory_store, event_sink
    ):
        run = tracker.start("test-venue")
        memory_store.available = False
        with pytest.raises(StoreUnavailableError):
            ErrorLog(memory_store, sink=event_sink).record(
                run, ErrorStage.PERSIST, RuntimeError("write lost")
            )
        [event] = event_sink.named("record.failed")
        assert event.payload["persisted"] is False
        assert event.level == "error"

    def test_severity_override(self, tracker, memory_store):
        run = tracker.start("test-venue")
        entry = ErrorLog(memory_store).record(
            run,
            ErrorStage.FETCH,
            RuntimeError("boom"),
            severity=ErrorSeverity.CRITICAL,
        )
        assert entry.kind == "RuntimeError"
        assert entry.severity == "critical"

    def test_snapshot_is_independent_copy(self):
        raw = {"nested": {"when": datetime(2024, 6, 1)}}
        snapshot = snapshot_payload(raw)
        raw["nested"]["when"] = None
        assert snapshot == {"nested": {"when": "2024-06-01 00:00:00"}}
        assert snapshot_payload(None) is None

    def test_error_kind(self):
        assert error_kind(ValueError("x")) == "ValueError"
        assert error_kind(StoreUnavailableError("x")) == "StoreUnavailableError"
