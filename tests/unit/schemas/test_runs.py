"""
Unit tests for run bookkeeping schemas.
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from src.schemas.runs import (
    ErrorLogEntry,
    ErrorSeverity,
    ErrorStage,
    RunCounts,
    RunStage,
    RunStatus,
    ScraperRun,
)


class TestRunCounts:
    """Tests for the closure accounting of RunCounts."""

    def test_balanced(self):
        counts = RunCounts(scraped=5, created=2, updated=1, unchanged=1, failed=1)
        assert counts.accounted == 5
        assert counts.is_balanced

    def test_skipped_counts_towards_balance(self):
        counts = RunCounts(scraped=3, created=2, skipped=1)
        assert counts.is_balanced

    def test_unbalanced(self):
        counts = RunCounts(scraped=3, created=1)
        assert not counts.is_balanced

    def test_negative_count_rejected(self):
        with pytest.raises(ValidationError):
            RunCounts(scraped=-1)


class TestRunStage:
    @pytest.mark.parametrize(
        "stage", [RunStage.COMPLETED, RunStage.PARTIALLY_FAILED, RunStage.FAILED]
    )
    def test_terminal_stages(self, stage):
        assert stage.is_terminal

    def test_working_stages_not_terminal(self):
        assert not RunStage.PERSISTING.is_terminal
        assert not RunStage.PENDING.is_terminal


class TestScraperRun:
    """Tests for ScraperRun defaults and derived fields."""

    def test_defaults(self):
        run = ScraperRun(source_id="test-venue")
        assert run.status == RunStatus.RUNNING.value
        assert run.stage == RunStage.PENDING.value
        assert run.counts.scraped == 0
        assert not run.is_closed
        assert run.duration_seconds is None

    def test_run_ids_unique(self):
        assert ScraperRun(source_id="a").run_id != ScraperRun(source_id="a").run_id

    def test_duration(self):
        started = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        run = ScraperRun(
            source_id="a", started_at=started, ended_at=started + timedelta(seconds=42)
        )
        assert run.is_closed
        assert run.duration_seconds == 42.0

    def test_empty_source_rejected(self):
        with pytest.raises(ValidationError):
            ScraperRun(source_id="")

    def test_json_round_trip(self):
        run = ScraperRun(source_id="a", counts=RunCounts(scraped=2, created=2))
        restored = ScraperRun.model_validate(run.model_dump(mode="json"))
        assert restored.run_id == run.run_id
        assert restored.counts == run.counts


class TestErrorLogEntry:
    def test_entry_is_frozen(self):
        entry = ErrorLogEntry(
            run_id="r",
            source_id="s",
            stage=ErrorStage.NORMALIZE,
            kind="MissingField",
            message="Required field 'title' is missing or empty",
            raw_payload={"venue": "The Croft"},
        )
        with pytest.raises(ValidationError):
            entry.message = "changed"

    def test_enum_values_stored(self):
        entry = ErrorLogEntry(
            run_id="r",
            source_id="s",
            stage=ErrorStage.PERSIST,
            kind="PersistenceError",
            message="rejected",
            severity=ErrorSeverity.HIGH,
        )
        assert entry.stage == "persist"
        assert entry.severity == "high"
