"""
In-memory document store.

Keeps JSON documents in dicts behind a lock. Used for dry runs and tests;
applies the same venue-slug constraint as the PostgreSQL schema so that
per-operation failures behave the same way.
"""

import copy
import logging
import re
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from pydantic import ValidationError

from src.ingestion.errors import StoreUnavailableError
from src.ingestion.storage.base import (
    VENUE_SLUG_PATTERN,
    DocumentStore,
    OperationKind,
    OperationOutcome,
    WriteOperation,
)
from src.schemas.gig import Gig
from src.schemas.runs import ErrorLogEntry, ScraperRun

logger = logging.getLogger(__name__)

_SLUG_RE = re.compile(VENUE_SLUG_PATTERN)


class InMemoryDocumentStore(DocumentStore):
    """
    Dict-backed ``DocumentStore``.

    Set ``available = False`` to simulate an unreachable backend.
    """

    def __init__(self):
        self._gigs: Dict[str, Dict[str, Any]] = {}
        self._runs: Dict[str, Dict[str, Any]] = {}
        self._errors: List[Dict[str, Any]] = []
        self._lock = threading.RLock()
        self.available = True

    def _check_available(self) -> None:
        if not self.available:
            raise StoreUnavailableError("In-memory store is marked unavailable")

    # ------------------------------------------------------------------
    # Gigs
    # ------------------------------------------------------------------

    def find_by_keys(self, keys: Iterable[str]) -> Dict[str, Gig]:
        self._check_available()
        with self._lock:
            return {
                key: Gig.from_document(copy.deepcopy(self._gigs[key]))
                for key in set(keys)
                if key in self._gigs
            }

    def bulk_upsert(
        self, operations: Sequence[WriteOperation]
    ) -> List[OperationOutcome]:
        self._check_available()
        outcomes = []
        with self._lock:
            for op in operations:
                try:
                    self._apply(op)
                except (ValueError, KeyError) as e:
                    outcomes.append(
                        OperationOutcome(op.identity_key, ok=False, error=str(e))
                    )
                else:
                    outcomes.append(OperationOutcome(op.identity_key, ok=True))
        return outcomes

    def _apply(self, op: WriteOperation) -> None:
        if op.kind == OperationKind.TOUCH:
            if op.identity_key not in self._gigs:
                raise KeyError(f"No gig stored under {op.identity_key}")
            self._gigs[op.identity_key].update(copy.deepcopy(op.document))
            return

        slug = (op.document.get("venue") or {}).get("slug") or ""
        if not _SLUG_RE.match(slug):
            raise ValueError(f"venue slug {slug!r} violates {VENUE_SLUG_PATTERN}")
        try:
            Gig.from_document(op.document)
        except ValidationError as e:
            raise ValueError(f"invalid gig document: {e}") from e
        self._gigs[op.identity_key] = copy.deepcopy(op.document)

    def mark_stale(
        self,
        source_id: str,
        seen_keys: Iterable[str],
        threshold: int,
        now: Optional[datetime] = None,
    ) -> List[str]:
        self._check_available()
        seen = set(seen_keys)
        newly_stale = []
        with self._lock:
            for key, doc in self._gigs.items():
                if doc.get("source_id") != source_id or key in seen:
                    continue
                doc["missed_runs"] = int(doc.get("missed_runs") or 0) + 1
                if doc["missed_runs"] >= threshold and not doc.get("stale"):
                    doc["stale"] = True
                    newly_stale.append(key)
        return newly_stale

    def all_gigs(self) -> List[Gig]:
        """Every stored gig; a convenience for dry runs and tests."""
        with self._lock:
            return [Gig.from_document(copy.deepcopy(d)) for d in self._gigs.values()]

    # ------------------------------------------------------------------
    # Runs & error log
    # ------------------------------------------------------------------

    def save_run(self, run: ScraperRun) -> None:
        self._check_available()
        with self._lock:
            self._runs[run.run_id] = run.model_dump(mode="json")

    def get_run(self, run_id: str) -> Optional[ScraperRun]:
        self._check_available()
        with self._lock:
            doc = self._runs.get(run_id)
            return ScraperRun.model_validate(doc) if doc else None

    def list_runs(
        self, source_id: Optional[str] = None, limit: int = 50
    ) -> List[ScraperRun]:
        self._check_available()
        with self._lock:
            runs = [
                ScraperRun.model_validate(doc)
                for doc in self._runs.values()
                if source_id is None or doc["source_id"] == source_id
            ]
        runs.sort(key=lambda r: r.started_at, reverse=True)
        return runs[:limit]

    def append_error(self, entry: ErrorLogEntry) -> None:
        self._check_available()
        with self._lock:
            self._errors.append(entry.model_dump(mode="json"))

    def list_errors(self, run_id: str) -> List[ErrorLogEntry]:
        self._check_available()
        with self._lock:
            return [
                ErrorLogEntry.model_validate(doc)
                for doc in self._errors
                if doc["run_id"] == run_id
            ]

    def reset(self) -> None:
        with self._lock:
            self._gigs.clear()
            self._runs.clear()
            self._errors.clear()
        logger.debug("In-memory store reset")
