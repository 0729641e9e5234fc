"""
Pipeline Orchestrator.

Coordinates runs of all configured gig sources: one run per source at a time,
different sources in parallel, each run isolated from the others.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from src.configs.config import SourceConfig, load_ingestion_config
from src.configs.settings import Settings, get_settings
from src.ingestion.adapters import BaseSourceAdapter, create_adapter
from src.ingestion.errors import ConfigError, RunFailedError, RunInProgressError
from src.ingestion.monitoring.events import EventSink, LoggingEventSink
from src.ingestion.pipeline import IngestionPipeline, PipelineExecutionResult
from src.ingestion.storage import (
    DocumentStore,
    InMemoryDocumentStore,
    PostgresDocumentStore,
)
from src.schemas.runs import RunStatus, ScraperRun

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[SourceConfig], BaseSourceAdapter]

DEFAULT_PARALLELISM = 4


@dataclass
class SourceRunOutcome:
    """What happened to one source in ``run_all``."""

    source_id: str
    run: Optional[ScraperRun] = None
    skipped: bool = False
    error: Optional[str] = None

    @property
    def status(self) -> str:
        if self.skipped:
            return "skipped"
        if self.run is None:
            return RunStatus.FAILED.value
        return self.run.status


class PipelineOrchestrator:
    """
    Coordinates all gig source runs.

    Responsibilities:
    - Register source configurations
    - Refuse a second run of a source while one is in flight
    - Execute sources on demand, in parallel across sources
    - Track execution history and per-source health
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        sink: Optional[EventSink] = None,
        parallelism: int = DEFAULT_PARALLELISM,
        adapter_factory: AdapterFactory = create_adapter,
        pipeline_kwargs: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            store: Document store shared by every run
            sink: Observability sink handed to every pipeline
            parallelism: Maximum number of sources run at once by ``run_all``
            adapter_factory: Builds a fresh adapter for each run
            pipeline_kwargs: Extra keyword arguments for ``IngestionPipeline``
                (e.g. clocks in tests)
        """
        if parallelism < 1:
            raise ValueError("parallelism must be >= 1")
        self.logger = logging.getLogger("orchestrator")
        self.store = store
        self.sink = sink or LoggingEventSink()
        self.parallelism = parallelism
        self.adapter_factory = adapter_factory
        self.pipeline_kwargs = dict(pipeline_kwargs or {})

        self.sources: Dict[str, SourceConfig] = {}
        self.execution_history: List[ScraperRun] = []
        self._run_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    # ========================================================================
    # SOURCE MANAGEMENT
    # ========================================================================

    def register_source(self, config: SourceConfig) -> None:
        """
        Register (or replace) a source configuration.

        Args:
            config: Validated SourceConfig
        """
        with self._lock:
            self.sources[config.source_id] = config
            self._run_locks.setdefault(config.source_id, threading.Lock())
        self.logger.info(
            f"Registered source: {config.source_id} (adapter: {config.adapter})"
        )

    def get_source(self, source_id: str) -> Optional[SourceConfig]:
        """Get a registered source by id."""
        return self.sources.get(source_id)

    def list_sources(self) -> List[Dict[str, Any]]:
        """List all registered sources with their adapters."""
        return [
            {"source_id": s.source_id, "adapter": s.adapter, "enabled": s.enabled}
            for s in self.sources.values()
        ]

    def is_running(self, source_id: str) -> bool:
        lock = self._run_locks.get(source_id)
        return lock is not None and lock.locked()

    # ========================================================================
    # EXECUTION
    # ========================================================================

    def run_source(self, source_id: str) -> PipelineExecutionResult:
        """
        Run a single source once.

        Args:
            source_id: Registered source to run

        Returns:
            PipelineExecutionResult of a ``completed`` or ``partial`` run

        Raises:
            ConfigError: If the source is unknown or its adapter cannot be built
            RunInProgressError: If a run of this source is already in flight
            RunFailedError: If the run ended ``failed``
        """
        config = self.get_source(source_id)
        if config is None:
            raise ConfigError(f"Source '{source_id}' not registered")

        lock = self._run_locks[source_id]
        if not lock.acquire(blocking=False):
            raise RunInProgressError(
                f"A run of '{source_id}' is already in progress", source_id=source_id
            )

        try:
            self.logger.info(f"Executing source: {source_id}")
            adapter = self.adapter_factory(config)
            pipeline = IngestionPipeline(
                config, adapter, self.store, sink=self.sink, **self.pipeline_kwargs
            )
            try:
                result = pipeline.execute()
            except RunFailedError as e:
                self._record(e.run)
                raise
            self._record(result.run)
            return result
        finally:
            lock.release()

    def run_all(
        self, source_ids: Optional[Iterable[str]] = None
    ) -> Dict[str, SourceRunOutcome]:
        """
        Run several sources concurrently.

        Args:
            source_ids: Sources to run; every enabled source when omitted

        Returns:
            Dictionary mapping source_id -> SourceRunOutcome. Failures of one
            source never reach the others or the caller.
        """
        if source_ids is None:
            targets = [s.source_id for s in self.sources.values() if s.enabled]
        else:
            targets = list(source_ids)

        if not targets:
            return {}

        workers = min(self.parallelism, len(targets))
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="ingest"
        ) as executor:
            futures = {
                source_id: executor.submit(self._run_isolated, source_id)
                for source_id in targets
            }
            return {source_id: f.result() for source_id, f in futures.items()}

    def _run_isolated(self, source_id: str) -> SourceRunOutcome:
        try:
            result = self.run_source(source_id)
            return SourceRunOutcome(source_id=source_id, run=result.run)
        except RunInProgressError as e:
            self.logger.warning(f"{source_id} already running, skipping")
            return SourceRunOutcome(source_id=source_id, skipped=True, error=str(e))
        except RunFailedError as e:
            self.logger.error(f"Failed to execute {source_id}: {e}")
            return SourceRunOutcome(source_id=source_id, run=e.run, error=str(e))
        except Exception as e:
            self.logger.error(f"Failed to execute {source_id}: {e}", exc_info=True)
            return SourceRunOutcome(source_id=source_id, error=str(e))

    def _record(self, run: ScraperRun) -> None:
        with self._lock:
            self.execution_history.append(run)

    # ========================================================================
    # HISTORY & STATS
    # ========================================================================

    def get_execution_history(
        self, source_id: Optional[str] = None, limit: int = 10
    ) -> List[ScraperRun]:
        """Get execution history of this process, optionally filtered by source."""
        with self._lock:
            runs = list(self.execution_history)
        if source_id:
            runs = [r for r in runs if r.source_id == source_id]
        return runs[-limit:]

    def get_stored_history(
        self, source_id: Optional[str] = None, limit: int = 50
    ) -> List[ScraperRun]:
        """Runs recorded in the store, newest first."""
        return self.store.list_runs(source_id, limit)

    def get_execution_stats(self, source_id: Optional[str] = None) -> Dict[str, Any]:
        """Get aggregate statistics about source runs."""
        runs = self.get_execution_history(source_id, limit=len(self.execution_history))
        if not runs:
            return {"total_executions": 0}

        by_status = {status.value: 0 for status in RunStatus}
        for run in runs:
            by_status[run.status] = by_status.get(run.status, 0) + 1
        durations = [r.duration_seconds for r in runs if r.duration_seconds is not None]
        total_scraped = sum(r.counts.scraped for r in runs)

        return {
            "total_executions": len(runs),
            "completed_executions": by_status[RunStatus.COMPLETED.value],
            "partial_executions": by_status[RunStatus.PARTIAL.value],
            "failed_executions": by_status[RunStatus.FAILED.value],
            "success_rate": by_status[RunStatus.COMPLETED.value] / len(runs) * 100,
            "total_records_scraped": total_scraped,
            "total_created": sum(r.counts.created for r in runs),
            "total_updated": sum(r.counts.updated for r in runs),
            "total_failed_records": sum(r.counts.failed for r in runs),
            "average_records_per_run": total_scraped / len(runs),
            "average_duration_s": sum(durations) / len(durations) if durations else 0.0,
        }

    def health_summary(self) -> Dict[str, Dict[str, Any]]:
        """
        Per-source health from this process's history.

        A source is unhealthy when its last run failed; ``consecutive_failures``
        counts failed runs back from the latest one.
        """
        summary: Dict[str, Dict[str, Any]] = {}
        for source_id in self.sources:
            runs = self.get_execution_history(
                source_id, limit=len(self.execution_history)
            )
            consecutive_failures = 0
            for run in reversed(runs):
                if run.status != RunStatus.FAILED.value:
                    break
                consecutive_failures += 1
            last = runs[-1] if runs else None
            summary[source_id] = {
                "running": self.is_running(source_id),
                "last_status": last.status if last else None,
                "last_run_at": last.started_at.isoformat() if last else None,
                "last_error": last.error if last else None,
                "consecutive_failures": consecutive_failures,
                "healthy": last is None or last.status != RunStatus.FAILED.value,
            }
        return summary


# ============================================================================
# FACTORIES
# ============================================================================


def build_store(settings: Optional[Settings] = None) -> DocumentStore:
    """
    PostgreSQL store when ``DATABASE_URL`` is set, in-memory store otherwise.

    Raises:
        StoreUnavailableError: If the database cannot be reached
    """
    settings = settings or get_settings()
    dsn = settings.database_dsn
    if not dsn:
        logger.warning("DATABASE_URL not set, using the in-memory store")
        return InMemoryDocumentStore()
    return PostgresDocumentStore.connect(
        dsn, connect_timeout=settings.DB_CONNECT_TIMEOUT_S
    )


def load_orchestrator_from_config(
    config_path: Optional[Union[str, Path]] = None,
    *,
    store: Optional[DocumentStore] = None,
    sink: Optional[EventSink] = None,
    settings: Optional[Settings] = None,
) -> PipelineOrchestrator:
    """
    Factory function to create orchestrator from YAML config.

    Args:
        config_path: Path to ingestion.yaml; ``INGESTION_CONFIG_PATH`` when omitted
        store: Document store; built from settings when omitted
        sink: Observability sink
        settings: Settings override

    Returns:
        Configured PipelineOrchestrator with every declared source registered

    Raises:
        ConfigError: If the config file is missing or invalid
    """
    settings = settings or get_settings()
    ingestion_config = load_ingestion_config(
        config_path or settings.INGESTION_CONFIG_PATH
    )

    orchestrator = PipelineOrchestrator(
        store or build_store(settings),
        sink=sink,
        parallelism=ingestion_config.parallelism or settings.PARALLELISM,
    )
    for source in ingestion_config.sources.values():
        orchestrator.register_source(source)
    return orchestrator
