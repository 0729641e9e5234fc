"""
Run Tracker and Error Log.

``RunTracker`` owns the ``ScraperRun`` lifecycle: opened when a source run
starts, moved through its stages, closed exactly once with final counts.
``ErrorLog`` appends one entry per failure, carrying a snapshot of the raw
payload that caused it.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from src.ingestion.errors import IngestionError, RunFailedError, StoreUnavailableError
from src.ingestion.monitoring.events import EventSink, NullEventSink
from src.ingestion.storage.base import DocumentStore
from src.schemas.runs import (
    ErrorLogEntry,
    ErrorSeverity,
    ErrorStage,
    RunCounts,
    RunStage,
    RunStatus,
    ScraperRun,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Stage a run-fatal error is attributed to, by the state the run was in
STAGE_FOR_STATE = {
    RunStage.PENDING: ErrorStage.FETCH,
    RunStage.FETCHING: ErrorStage.FETCH,
    RunStage.EXTRACTING: ErrorStage.EXTRACT,
    RunStage.NORMALIZING: ErrorStage.NORMALIZE,
    RunStage.DEDUPLICATING: ErrorStage.DEDUP,
    RunStage.PERSISTING: ErrorStage.PERSIST,
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def snapshot_payload(raw: Any) -> Any:
    """JSON-safe deep copy of a raw payload; unknown objects become strings."""
    if raw is None:
        return None
    return json.loads(json.dumps(raw, default=str))


def error_kind(error: BaseException) -> str:
    if isinstance(error, IngestionError):
        return error.kind
    return type(error).__name__


class RunClosedError(RuntimeError):
    """A closed run was modified."""


class RunTracker:
    """
    Create, advance and close ``ScraperRun`` records.

    Example:
        run = tracker.start("bristol-the-croft")
        tracker.advance(run, RunStage.FETCHING)
        ...
        tracker.close(run, counts)
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        sink: Optional[EventSink] = None,
        clock: Clock = _utc_now,
    ):
        self.store = store
        self.sink = sink or NullEventSink()
        self.clock = clock

    def start(self, source_id: str) -> ScraperRun:
        """
        Open a run in the ``pending`` state and save it.

        Raises:
            RunFailedError: If the run cannot be saved; the same run is
                closed as failed, so its ``run.started`` gets a matching
                ``run.finished``
        """
        run = ScraperRun(source_id=source_id, started_at=self.clock())
        self.sink.emit(
            "run.started",
            {"run_id": run.run_id, "source_id": source_id},
            stage="pending",
        )
        try:
            self.store.save_run(run)
        except StoreUnavailableError as e:
            self.close(run, RunCounts(), fatal=e)
            raise RunFailedError(run, e) from e
        return run

    def advance(self, run: ScraperRun, stage: RunStage) -> None:
        """Move an open run to ``stage``."""
        if run.is_closed:
            raise RunClosedError(f"Run {run.run_id} is already closed")
        run.stage = RunStage(stage).value
        self.sink.emit(
            "run.stage",
            {"run_id": run.run_id, "source_id": run.source_id},
            level="debug",
            stage=run.stage,
        )

    def close(
        self,
        run: ScraperRun,
        counts: RunCounts,
        *,
        fatal: Optional[BaseException] = None,
        degraded: bool = False,
    ) -> ScraperRun:
        """
        Close a run exactly once.

        Status:
        - fatal error -> failed
        - any failed record, or ``degraded`` (e.g. fetch cut short) -> partial
        - otherwise -> completed

        The closed run is saved on a best-effort basis: when the store is
        what failed, the in-memory run is still closed and returned.
        """
        if run.is_closed:
            raise RunClosedError(f"Run {run.run_id} is already closed")

        if fatal is not None:
            run.status = RunStatus.FAILED.value
            run.stage = RunStage.FAILED.value
            run.error = str(fatal)
            run.error_kind = error_kind(fatal)
        elif counts.failed > 0 or degraded:
            run.status = RunStatus.PARTIAL.value
            run.stage = RunStage.PARTIALLY_FAILED.value
        else:
            run.status = RunStatus.COMPLETED.value
            run.stage = RunStage.COMPLETED.value

        run.counts = counts
        run.ended_at = self.clock()

        if not counts.is_balanced:
            logger.error(
                f"Run {run.run_id} counts do not balance: "
                f"{counts.accounted} accounted for {counts.scraped} scraped"
            )

        level = "error" if fatal is not None else "info"
        self.sink.emit(
            "run.finished",
            {
                "run_id": run.run_id,
                "source_id": run.source_id,
                "status": run.status,
                "duration_seconds": run.duration_seconds,
                "counts": counts.model_dump(),
                "error": run.error,
            },
            level=level,
            stage=run.stage,
        )

        try:
            self.store.save_run(run)
        except IngestionError as e:
            logger.error(f"Could not save closed run {run.run_id}: {e}")
        return run

    def get(self, run_id: str) -> Optional[ScraperRun]:
        return self.store.get_run(run_id)

    def history(
        self, source_id: Optional[str] = None, limit: int = 50
    ) -> List[ScraperRun]:
        return self.store.list_runs(source_id, limit)


class ErrorLog:
    """Append-only log of failures, one entry per failed record."""

    def __init__(self, store: DocumentStore, *, sink: Optional[EventSink] = None):
        self.store = store
        self.sink = sink or NullEventSink()

    def record(
        self,
        run: ScraperRun,
        stage: ErrorStage,
        error: BaseException,
        *,
        raw_payload: Any = None,
        identity_key: Optional[str] = None,
        severity: Optional[ErrorSeverity] = None,
    ) -> ErrorLogEntry:
        """
        Append an entry for ``error``.

        ``record.failed`` is emitted either way; its ``persisted`` flag says
        whether the entry reached the store.

        Raises:
            StoreUnavailableError: If the entry cannot be written
        """
        if severity is None:
            severity = getattr(error, "severity", ErrorSeverity.MEDIUM)
        entry = ErrorLogEntry(
            run_id=run.run_id,
            source_id=run.source_id,
            stage=stage,
            kind=error_kind(error),
            message=str(error),
            raw_payload=snapshot_payload(raw_payload),
            identity_key=identity_key,
            severity=severity,
        )
        persisted = False
        try:
            self.store.append_error(entry)
            persisted = True
        finally:
            self.sink.emit(
                "record.failed",
                {
                    "run_id": run.run_id,
                    "source_id": run.source_id,
                    "kind": entry.kind,
                    "message": entry.message,
                    "identity_key": identity_key,
                    "persisted": persisted,
                },
                level="warning" if persisted else "error",
                stage=ErrorStage(stage).value,
            )
        return entry

    def for_run(self, run_id: str) -> List[ErrorLogEntry]:
        return self.store.list_errors(run_id)
