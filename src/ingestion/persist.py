# Persistence layer for classified gigs
"""
Persistence Coordinator.

Turns classified gigs into store write operations, submits them in chunks of
``batch_size_limit`` and collects per-record outcomes:

- CREATE / UPDATE -> upsert of the whole document
- UNCHANGED       -> touch (seen timestamps and staleness only)
- SKIP            -> nothing is sent

Chunks are submitted one after another. A record rejected by the store fails
alone; a chunk whose submission fails as a whole fails every record in it.
Writes are keyed upserts, so persisting the same batch twice converges to the
same stored state.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Sequence, Tuple

from src.ingestion.deduplication import ClassifiedGig, DedupAction
from src.ingestion.errors import (
    PersistenceError,
    RunTimeoutError,
    StoreUnavailableError,
)
from src.ingestion.monitoring.events import EventSink, NullEventSink
from src.ingestion.runtime import Deadline
from src.ingestion.storage.base import DocumentStore, WriteOperation

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE_LIMIT = 500


@dataclass
class BulkOperationResult:
    """Aggregate outcome of ``PersistenceCoordinator.persist``."""

    created: int = 0
    updated: int = 0
    unchanged: int = 0
    persisted: List[str] = field(default_factory=list)
    failed: List[Tuple[str, PersistenceError]] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return self.created + self.updated + self.unchanged

    @property
    def failed_keys(self) -> List[str]:
        return [key for key, _ in self.failed]

    def merge(self, other: "BulkOperationResult") -> None:
        self.created += other.created
        self.updated += other.updated
        self.unchanged += other.unchanged
        self.persisted.extend(other.persisted)
        self.failed.extend(other.failed)


def build_operation(classified: ClassifiedGig) -> Optional[WriteOperation]:
    """Write operation for one classified gig, ``None`` for SKIP."""
    if classified.action in (DedupAction.CREATE, DedupAction.UPDATE):
        return WriteOperation.upsert(classified.gig)
    if classified.action == DedupAction.UNCHANGED:
        return WriteOperation.touch(classified.gig)
    return None


def chunked(items: Sequence, size: int) -> Iterator[Sequence]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class PersistenceCoordinator:
    """
    Submit classified gigs to a ``DocumentStore``.

    Example:
        coordinator = PersistenceCoordinator(store, batch_size_limit=500)
        result = coordinator.persist(classified)
        for key, error in result.failed:
            ...
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        batch_size_limit: int = DEFAULT_BATCH_SIZE_LIMIT,
        sink: Optional[EventSink] = None,
    ) -> None:
        if batch_size_limit < 1:
            raise ValueError("batch_size_limit must be >= 1")
        self.store = store
        self.batch_size_limit = batch_size_limit
        self.sink = sink or NullEventSink()

    def persist(
        self,
        classified: Sequence[ClassifiedGig],
        deadline: Optional[Deadline] = None,
    ) -> BulkOperationResult:
        """
        Persist a classified batch.

        Args:
            classified: Output of the deduplicator; identity keys are unique
                among non-SKIP entries
            deadline: Checked before every chunk

        Returns:
            BulkOperationResult with counts and ``(identity_key, error)`` failures

        Raises:
            StoreUnavailableError: The store cannot be reached
            RunTimeoutError: The deadline expired; remaining chunks are discarded
        """
        pending: List[Tuple[ClassifiedGig, WriteOperation]] = []
        for item in classified:
            op = build_operation(item)
            if op is not None:
                pending.append((item, op))

        result = BulkOperationResult()
        size = self.batch_size_limit
        total_chunks = (len(pending) + size - 1) // size
        for index, chunk in enumerate(chunked(pending, size), start=1):
            try:
                if deadline is not None:
                    deadline.check(f"persist chunk {index}/{total_chunks}")
                chunk_result = self._persist_chunk(chunk)
            except (RunTimeoutError, StoreUnavailableError) as e:
                # Chunks already committed stay committed
                e.partial_result = result
                raise
            result.merge(chunk_result)
            self.sink.emit(
                "persist.chunk",
                {
                    "chunk": index,
                    "chunks": total_chunks,
                    "size": len(chunk),
                    "created": chunk_result.created,
                    "updated": chunk_result.updated,
                    "unchanged": chunk_result.unchanged,
                    "failed": len(chunk_result.failed),
                },
                level="debug",
                stage="persist",
            )

        self.sink.emit(
            "persist.summary",
            {
                "operations": len(pending),
                "created": result.created,
                "updated": result.updated,
                "unchanged": result.unchanged,
                "failed": len(result.failed),
            },
            stage="persist",
        )
        return result

    def _persist_chunk(
        self, chunk: Sequence[Tuple[ClassifiedGig, WriteOperation]]
    ) -> BulkOperationResult:
        result = BulkOperationResult()
        operations = [op for _, op in chunk]

        try:
            outcomes = self.store.bulk_upsert(operations)
            if len(outcomes) != len(operations):
                raise PersistenceError(
                    f"Store returned {len(outcomes)} outcomes "
                    f"for {len(operations)} operations"
                )
        except StoreUnavailableError:
            raise
        except Exception as e:
            logger.error(f"Bulk write of {len(operations)} operations failed: {e}")
            for _, op in chunk:
                result.failed.append(
                    (
                        op.identity_key,
                        PersistenceError(
                            f"Chunk write failed: {e}", identity_key=op.identity_key
                        ),
                    )
                )
            return result

        for (item, op), outcome in zip(chunk, outcomes):
            if not outcome.ok:
                result.failed.append(
                    (
                        op.identity_key,
                        PersistenceError(
                            outcome.error or "write rejected",
                            identity_key=op.identity_key,
                        ),
                    )
                )
            else:
                result.persisted.append(op.identity_key)
                if item.action == DedupAction.CREATE:
                    result.created += 1
                elif item.action == DedupAction.UPDATE:
                    result.updated += 1
                else:
                    result.unchanged += 1
        return result

    def mark_stale(self, source_id: str, seen_keys, threshold: int) -> List[str]:
        """
        Advance missed-run counters for gigs of ``source_id`` not seen this run.

        Returns:
            Identity keys newly flagged stale
        """
        newly_stale = self.store.mark_stale(source_id, seen_keys, threshold)
        if newly_stale:
            self.sink.emit(
                "stale.marked",
                {"source_id": source_id, "count": len(newly_stale)},
                stage="persist",
            )
        return newly_stale
