"""
Ingestion Pipeline.

Drives one run of one source through the stages:

    pending -> fetching -> extracting -> normalizing -> deduplicating
            -> persisting -> completed | partially_failed | failed

Record-scoped failures (extract, normalize, dedup conflict, persist) are
written to the error log and the record is dropped; the run goes on.
Run-fatal failures (fetch with nothing fetched, store unavailable, timeout)
close the run as ``failed`` and raise ``RunFailedError``.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from src.configs.config import SourceConfig
from src.ingestion.adapters.base_adapter import BaseSourceAdapter, RawRecord
from src.ingestion.deduplication import (
    ClassificationResult,
    DedupAction,
    GigDeduplicator,
)
from src.ingestion.errors import (
    FetchError,
    IngestionError,
    RunFailedError,
    RunTimeoutError,
    StoreUnavailableError,
)
from src.ingestion.monitoring.events import EventSink, NullEventSink
from src.ingestion.monitoring.logging import with_context
from src.ingestion.normalization.normalizer import GigNormalizer, extract_record
from src.ingestion.persist import BulkOperationResult, PersistenceCoordinator
from src.ingestion.runtime import Deadline
from src.ingestion.storage.base import DocumentStore
from src.ingestion.tracking import STAGE_FOR_STATE, ErrorLog, RunTracker
from src.schemas.gig import Gig
from src.schemas.runs import (
    ErrorLogEntry,
    ErrorSeverity,
    ErrorStage,
    RunCounts,
    RunStage,
    ScraperRun,
)

RUN_FATAL_ERRORS = (FetchError, RunTimeoutError, StoreUnavailableError)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PipelineExecutionResult:
    """Result of a pipeline execution."""

    run: ScraperRun
    errors: List[ErrorLogEntry] = field(default_factory=list)
    newly_stale: List[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        return self.run.status

    @property
    def counts(self) -> RunCounts:
        return self.run.counts

    @property
    def duration_seconds(self) -> float:
        """Calculate execution duration."""
        return self.run.duration_seconds or 0.0

    @property
    def success_rate(self) -> float:
        """Calculate success rate percentage."""
        if self.counts.scraped == 0:
            return 0.0
        return (self.counts.scraped - self.counts.failed) / self.counts.scraped * 100


@dataclass
class _RunState:
    """Mutable bookkeeping for one execution."""

    run: ScraperRun
    counts: RunCounts = field(default_factory=RunCounts)
    raw: List[RawRecord] = field(default_factory=list)
    pending: Dict[int, Any] = field(default_factory=dict)
    index_by_key: Dict[str, int] = field(default_factory=dict)
    errors: List[ErrorLogEntry] = field(default_factory=list)
    degraded: bool = False
    # records that failed before an identity key existed
    unkeyed_failures: int = 0


class IngestionPipeline:
    """
    One run of one source.

    A pipeline instance is bound to a source config, an adapter instance and
    a store. ``execute()`` may be called once per adapter instance, since
    adapter iterators cannot be restarted.

    Example:
        pipeline = IngestionPipeline(config, create_adapter(config), store)
        result = pipeline.execute()
        print(result.status, result.counts)
    """

    def __init__(
        self,
        config: SourceConfig,
        adapter: BaseSourceAdapter,
        store: DocumentStore,
        *,
        sink: Optional[EventSink] = None,
        clock: Callable[[], datetime] = _utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the pipeline.

        Args:
            config: SourceConfig of the source being run
            adapter: Adapter producing raw records for that source
            store: Document store for gigs, runs and error entries
            sink: Observability sink for run events
            clock: Wall clock for timestamps
            monotonic: Clock for the run deadline
        """
        self.config = config
        self.adapter = adapter
        self.store = store
        self.sink = sink or NullEventSink()
        self.clock = clock
        self.monotonic = monotonic

        self.normalizer = GigNormalizer(config)
        self.deduplicator = GigDeduplicator(config.cross_source_policy, sink=self.sink)
        self.persistence = PersistenceCoordinator(
            store, batch_size_limit=config.batch_size_limit, sink=self.sink
        )
        self.tracker = RunTracker(store, sink=self.sink, clock=clock)
        self.error_log = ErrorLog(store, sink=self.sink)
        self.logger = with_context(
            logging.getLogger(f"pipeline.{config.source_id}"),
            source_id=config.source_id,
        )

    @property
    def source_id(self) -> str:
        return self.config.source_id

    # ========================================================================
    # EXECUTION
    # ========================================================================

    def execute(self) -> PipelineExecutionResult:
        """
        Run the source end to end.

        Returns:
            PipelineExecutionResult with the closed run (``completed`` or
            ``partial``) and the error entries written

        Raises:
            RunFailedError: On a run-fatal error; carries the closed run
        """
        deadline = Deadline.from_ms(self.config.run_timeout_ms, clock=self.monotonic)
        run = self.tracker.start(self.source_id)

        state = _RunState(run=run)
        log = with_context(self.logger, run_id=run.run_id)
        log.info(f"Starting run {run.run_id}")

        try:
            self._fetch(state, deadline, log)
            gigs = self._normalize(state, deadline)
            classified = self._deduplicate(state, gigs, deadline)
            self._persist(state, classified, deadline)
            newly_stale = self._mark_stale(state, gigs)
        except RUN_FATAL_ERRORS as e:
            self._fail(state, e, log)
            raise RunFailedError(state.run, e) from e
        except Exception as e:
            log.error(f"Unexpected error during run: {e}", exc_info=True)
            cause = IngestionError(
                f"Unexpected {type(e).__name__}: {e}", source_id=self.source_id
            )
            self._fail(state, e, log)
            raise RunFailedError(state.run, cause) from e

        self.tracker.close(state.run, state.counts, degraded=state.degraded)
        log.info(
            f"Run {run.run_id} {run.status}: "
            f"{state.counts.scraped} scraped, {state.counts.created} created, "
            f"{state.counts.updated} updated, {state.counts.unchanged} unchanged, "
            f"{state.counts.skipped} skipped, {state.counts.failed} failed"
        )
        return PipelineExecutionResult(
            run=state.run, errors=state.errors, newly_stale=newly_stale
        )

    def _enter(self, state: _RunState, stage: RunStage, deadline: Deadline) -> None:
        deadline.check(RunStage(stage).value)
        self.tracker.advance(state.run, stage)

    def _record_failure(
        self,
        state: _RunState,
        stage: ErrorStage,
        error: BaseException,
        raw_payload: Any = None,
        identity_key: Optional[str] = None,
        severity: Optional[ErrorSeverity] = None,
    ) -> None:
        entry = self.error_log.record(
            state.run,
            stage,
            error,
            raw_payload=raw_payload,
            identity_key=identity_key,
            severity=severity,
        )
        state.errors.append(entry)

    # ========================================================================
    # STAGES
    # ========================================================================

    def _fetch(self, state: _RunState, deadline: Deadline, log) -> None:
        """
        Pull every raw record from the adapter.

        A fetch failure with nothing fetched is fatal. After at least one
        record it is logged once and the run is marked degraded.
        """
        self._enter(state, RunStage.FETCHING, deadline)
        try:
            for raw in self.adapter.fetch_listings():
                state.pending[len(state.raw)] = raw
                state.raw.append(raw)
                state.counts.scraped += 1
                deadline.check("fetching")
        except RunTimeoutError:
            raise
        except Exception as e:
            error = e
            if not isinstance(e, FetchError):
                error = FetchError(f"Adapter failed: {e}", source_id=self.source_id)
                error.__cause__ = e
            if not state.raw:
                raise error
            log.warning(
                f"Fetch stopped after {len(state.raw)} records: {error.message}"
            )
            self._record_failure(state, ErrorStage.FETCH, error)
            state.degraded = True
        finally:
            self.adapter.close()

        log.info(f"Fetched {state.counts.scraped} raw records")

    def _settle_failed(
        self,
        state: _RunState,
        index: int,
        stage: ErrorStage,
        error: BaseException,
        identity_key: Optional[str] = None,
        severity: Optional[ErrorSeverity] = None,
    ) -> None:
        raw = state.pending.pop(index, state.raw[index])
        state.counts.failed += 1
        if stage in (ErrorStage.EXTRACT, ErrorStage.NORMALIZE):
            state.unkeyed_failures += 1
        self._record_failure(
            state,
            stage,
            error,
            raw_payload=raw,
            identity_key=identity_key,
            severity=severity,
        )

    def _normalize(self, state: _RunState, deadline: Deadline) -> List[Tuple[Gig, int]]:
        """Extract and normalize; failures are logged and dropped."""
        self._enter(state, RunStage.EXTRACTING, deadline)
        records: List[Tuple[Dict[str, Any], int]] = []
        for index, raw in enumerate(state.raw):
            deadline.check("extracting")
            try:
                records.append((extract_record(raw), index))
            except IngestionError as e:
                self._settle_failed(state, index, ErrorStage.EXTRACT, e)

        self._enter(state, RunStage.NORMALIZING, deadline)
        now = self.clock()
        gigs: List[Tuple[Gig, int]] = []
        for record, index in records:
            deadline.check("normalizing")
            try:
                gigs.append((self.normalizer.normalize(record, now=now), index))
            except IngestionError as e:
                self._settle_failed(state, index, ErrorStage.NORMALIZE, e)
            except Exception as e:
                self.logger.warning(
                    f"Unexpected normalization failure: {e}", exc_info=True
                )
                self._settle_failed(
                    state, index, ErrorStage.NORMALIZE, e, severity=ErrorSeverity.MEDIUM
                )
        return gigs

    def _deduplicate(
        self, state: _RunState, gigs: List[Tuple[Gig, int]], deadline: Deadline
    ) -> ClassificationResult:
        self._enter(state, RunStage.DEDUPLICATING, deadline)
        batch = [gig for gig, _ in gigs]
        existing = self.store.find_by_keys({gig.identity_key for gig in batch})
        result = self.deduplicator.classify(batch, existing, now=self.clock())

        for conflict in result.conflicts:
            self._settle_failed(
                state,
                gigs[conflict.position][1],
                ErrorStage.DEDUP,
                conflict.error,
                identity_key=conflict.gig.identity_key,
            )

        for item in result.classified:
            index = gigs[item.position][1]
            if item.action == DedupAction.SKIP:
                state.pending.pop(index, None)
                state.counts.skipped += 1
            else:
                state.index_by_key[item.identity_key] = index
        return result

    def _persist(
        self, state: _RunState, classified: ClassificationResult, deadline: Deadline
    ) -> None:
        self._enter(state, RunStage.PERSISTING, deadline)
        try:
            result = self.persistence.persist(classified.classified, deadline=deadline)
        except RUN_FATAL_ERRORS as e:
            partial = getattr(e, "partial_result", None)
            if partial is not None:
                self._apply_persist_result(state, partial)
            raise
        self._apply_persist_result(state, result)

    def _apply_persist_result(
        self, state: _RunState, result: BulkOperationResult
    ) -> None:
        state.counts.created += result.created
        state.counts.updated += result.updated
        state.counts.unchanged += result.unchanged
        for key in result.persisted:
            state.pending.pop(state.index_by_key[key], None)
        for key, error in result.failed:
            error.source_id = self.source_id
            self._settle_failed(
                state,
                state.index_by_key[key],
                ErrorStage.PERSIST,
                error,
                identity_key=key,
            )

    def _mark_stale(self, state: _RunState, gigs: List[Tuple[Gig, int]]) -> List[str]:
        """
        Advance staleness for gigs of this source missing from this run.

        Skipped when the fetch was cut short, or when a record failed before
        it had an identity key: either way some gigs the source still lists
        are missing from ``seen_keys``.
        """
        if state.degraded or state.unkeyed_failures:
            self.logger.info(
                "Staleness not advanced: "
                f"degraded={state.degraded}, unkeyed failures={state.unkeyed_failures}"
            )
            return []
        seen_keys = {gig.identity_key for gig, _ in gigs}
        return self.persistence.mark_stale(
            self.source_id, seen_keys, self.config.stale_after_runs
        )

    # ========================================================================
    # FAILURE
    # ========================================================================

    def _fail(self, state: _RunState, error: BaseException, log) -> None:
        """
        Close the run as failed.

        Records that were fetched but never reached a final outcome count as
        failed and each get an error entry carrying the fatal error. With no
        such record the error is logged once at run level.
        """
        stage = STAGE_FOR_STATE.get(RunStage(state.run.stage), ErrorStage.FETCH)
        discarded = sorted(state.pending)
        try:
            if not discarded:
                self._record_failure(
                    state, stage, error, severity=ErrorSeverity.CRITICAL
                )
            for index in discarded:
                self._settle_failed(
                    state, index, stage, error, severity=ErrorSeverity.CRITICAL
                )
        except IngestionError as e:
            log.error(f"Could not write error entry for failed run: {e}")
        # entries may be unwritable; counts must still balance
        state.counts.failed += len(state.pending)
        state.pending.clear()

        self.tracker.close(state.run, state.counts, fatal=error)
        log.error(f"Run {state.run.run_id} failed at {stage.value}: {error}")
