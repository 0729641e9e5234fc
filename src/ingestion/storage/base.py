"""
Document store interface.

The pipeline talks to storage only through ``DocumentStore``; any driver able
to upsert documents by key and report per-operation outcomes can back it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

from src.schemas.gig import Gig
from src.schemas.runs import ErrorLogEntry, ScraperRun

# Canonical venue slugs; stores refuse documents that violate it
VENUE_SLUG_PATTERN = r"^[a-z0-9]+(-[a-z0-9]+)*$"


class OperationKind(str, Enum):
    # Write the whole document, inserting or replacing by key
    UPSERT = "upsert"
    # Update seen timestamps and staleness of an existing document only
    TOUCH = "touch"


@dataclass
class WriteOperation:
    """One write against the gigs collection."""

    kind: OperationKind
    identity_key: str
    document: Dict[str, Any]

    @classmethod
    def upsert(cls, gig: Gig) -> "WriteOperation":
        return cls(OperationKind.UPSERT, gig.identity_key, gig.to_document())

    @classmethod
    def touch(cls, gig: Gig) -> "WriteOperation":
        document = gig.model_dump(
            mode="json", include={"last_seen", "last_updated", "stale", "missed_runs"}
        )
        return cls(OperationKind.TOUCH, gig.identity_key, document)


@dataclass
class OperationOutcome:
    """Result of one ``WriteOperation``; ``error`` is set when ``ok`` is False."""

    identity_key: str
    ok: bool
    error: Optional[str] = None


class DocumentStore(ABC):
    """
    Storage for gigs, runs and error log entries.

    Implementations raise ``StoreUnavailableError`` when the backend cannot be
    reached; every other failure of a single write is reported through its
    ``OperationOutcome``.
    """

    # ------------------------------------------------------------------
    # Gigs
    # ------------------------------------------------------------------

    @abstractmethod
    def find_by_keys(self, keys: Iterable[str]) -> Dict[str, Gig]:
        """Stored gigs for the given identity keys; missing keys are absent."""

    @abstractmethod
    def bulk_upsert(
        self, operations: Sequence[WriteOperation]
    ) -> List[OperationOutcome]:
        """
        Apply ``operations`` and return one outcome per operation, in order.

        A failing operation must not undo the others.
        """

    @abstractmethod
    def mark_stale(
        self,
        source_id: str,
        seen_keys: Iterable[str],
        threshold: int,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """
        Count a missed run for every gig of ``source_id`` not in ``seen_keys``.

        Gigs reaching ``threshold`` consecutive missed runs are flagged stale.

        Returns:
            Identity keys newly flagged stale
        """

    # ------------------------------------------------------------------
    # Runs & error log
    # ------------------------------------------------------------------

    @abstractmethod
    def save_run(self, run: ScraperRun) -> None:
        """Insert or replace a run by ``run_id``."""

    @abstractmethod
    def get_run(self, run_id: str) -> Optional[ScraperRun]:
        pass

    @abstractmethod
    def list_runs(
        self, source_id: Optional[str] = None, limit: int = 50
    ) -> List[ScraperRun]:
        """Most recent runs first."""

    @abstractmethod
    def append_error(self, entry: ErrorLogEntry) -> None:
        pass

    @abstractmethod
    def list_errors(self, run_id: str) -> List[ErrorLogEntry]:
        """Entries of one run in insertion order."""

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Release backend resources."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
