# Change detection against stored state
"""
Module for gig identity and deduplication.

Each normalized gig gets an identity key derived from its namespace (the
source, or a shared namespace), canonical venue slug, canonical title and
start instant. The deduplicator classifies a consolidated batch against the
gigs already stored under those keys:

- CREATE: key not stored yet
- UPDATE: key stored, content hash differs (or new cross-source provenance)
- UNCHANGED: key stored, same content; only seen timestamps advance
- SKIP: a later duplicate of a key already seen in this batch
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from src.configs.config import CrossSourcePolicy
from src.ingestion.errors import DedupConflictError
from src.ingestion.monitoring.events import EventSink, NullEventSink
from src.schemas.gig import Gig

logger = logging.getLogger(__name__)

# Namespace used instead of the source id when identity_scope is "global"
GLOBAL_NAMESPACE = "*"

_KEY_SEPARATOR = "\x1f"


# ============================================================================
# KEYS AND HASHES
# ============================================================================


def compute_identity_key(
    namespace: str, venue_slug: str, canonical_title: str, start: datetime
) -> str:
    """
    Stable identity key for a gig.

    ``start`` is taken in UTC to the minute, so the same wall-clock listing
    keys identically regardless of how the source formatted it.
    """
    instant = start.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%MZ")
    material = _KEY_SEPARATOR.join((namespace, venue_slug, canonical_title, instant))
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def compute_content_hash(gig: Gig) -> str:
    """sha256 over a stable JSON rendering of the gig's mutable fields."""
    payload = json.dumps(gig.content_fields(), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


# ============================================================================
# CLASSIFICATION
# ============================================================================


class DedupAction(str, Enum):
    """What the persistence layer must do with a classified gig."""

    CREATE = "create"
    UPDATE = "update"
    UNCHANGED = "unchanged"
    SKIP = "skip"


@dataclass
class ClassifiedGig:
    """
    A gig with the action decided for it.

    Attributes:
        gig: The document to write (already merged with stored state)
        action: DedupAction
        position: Index of the gig in the batch that was classified
        duplicate_of: For SKIP, the position of the record that won
        cross_source: True when the stored gig belongs to another source
    """

    gig: Gig
    action: DedupAction
    position: int
    duplicate_of: Optional[int] = None
    cross_source: bool = False

    @property
    def identity_key(self) -> str:
        return self.gig.identity_key


@dataclass
class DedupConflict:
    """A gig rejected under the ``reject`` cross-source policy."""

    gig: Gig
    position: int
    error: DedupConflictError


@dataclass
class ClassificationResult:
    """Output of ``GigDeduplicator.classify``."""

    classified: List[ClassifiedGig] = field(default_factory=list)
    conflicts: List[DedupConflict] = field(default_factory=list)

    def count(self, action: DedupAction) -> int:
        return sum(1 for c in self.classified if c.action == action)

    def __iter__(self):
        return iter(self.classified)

    def __len__(self) -> int:
        return len(self.classified)


class GigDeduplicator:
    """
    Classify normalized gigs against stored state.

    Within a batch the first record for a key wins. A stored gig owned by a
    different source is handled by the cross-source policy:

    - MERGE: the stored gig keeps its source_id, the newcomer is recorded in
      ``secondary_sources`` and its content overwrites the stored content
    - REJECT: the newcomer fails with DedupConflictError
    """

    def __init__(
        self,
        cross_source_policy: CrossSourcePolicy = CrossSourcePolicy.MERGE,
        sink: Optional[EventSink] = None,
    ):
        self.cross_source_policy = CrossSourcePolicy(cross_source_policy)
        self.sink = sink or NullEventSink()

    def classify(
        self,
        batch: Sequence[Gig],
        existing_by_key: Mapping[str, Gig],
        now: Optional[datetime] = None,
    ) -> ClassificationResult:
        """
        Classify a consolidated batch.

        Args:
            batch: Normalized gigs in fetch order
            existing_by_key: Stored gigs for (at least) the batch's keys
            now: Timestamp written to first_seen / last_seen / last_updated

        Returns:
            ClassificationResult; ``classified`` keeps batch order
        """
        now = now or datetime.now(timezone.utc)
        result = ClassificationResult()
        winners: Dict[str, int] = {}

        for position, gig in enumerate(batch):
            key = gig.identity_key
            if key in winners:
                result.classified.append(
                    ClassifiedGig(
                        gig=gig,
                        action=DedupAction.SKIP,
                        position=position,
                        duplicate_of=winners[key],
                    )
                )
                continue
            winners[key] = position

            existing = existing_by_key.get(key)
            if existing is None:
                result.classified.append(self._create(gig, position, now))
                continue

            if existing.source_id != gig.source_id:
                classified = self._cross_source(gig, existing, position, now, result)
                if classified is not None:
                    result.classified.append(classified)
                continue

            result.classified.append(self._against(gig, existing, position, now))

        logger.debug(
            f"Classified {len(batch)} gigs: "
            f"{result.count(DedupAction.CREATE)} create, "
            f"{result.count(DedupAction.UPDATE)} update, "
            f"{result.count(DedupAction.UNCHANGED)} unchanged, "
            f"{result.count(DedupAction.SKIP)} skip, "
            f"{len(result.conflicts)} conflicts"
        )
        return result

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def _create(self, gig: Gig, position: int, now: datetime) -> ClassifiedGig:
        created = gig.model_copy(
            update={
                "first_seen": now,
                "last_seen": now,
                "last_updated": now,
                "stale": False,
                "missed_runs": 0,
            }
        )
        return ClassifiedGig(gig=created, action=DedupAction.CREATE, position=position)

    def _against(
        self,
        gig: Gig,
        existing: Gig,
        position: int,
        now: datetime,
        *,
        source_id: Optional[str] = None,
        secondary_sources: Optional[List[str]] = None,
        cross_source: bool = False,
    ) -> ClassifiedGig:
        secondary = (
            secondary_sources
            if secondary_sources is not None
            else list(existing.secondary_sources)
        )
        provenance_changed = secondary != list(existing.secondary_sources)

        if gig.content_hash == existing.content_hash and not provenance_changed:
            touched = existing.model_copy(
                update={
                    "last_seen": now,
                    "last_updated": now,
                    "stale": False,
                    "missed_runs": 0,
                }
            )
            return ClassifiedGig(
                gig=touched,
                action=DedupAction.UNCHANGED,
                position=position,
                cross_source=cross_source,
            )

        updated = gig.model_copy(
            update={
                "source_id": source_id or existing.source_id,
                "first_seen": existing.first_seen or now,
                "last_seen": now,
                "last_updated": now,
                "secondary_sources": secondary,
                "stale": False,
                "missed_runs": 0,
            }
        )
        return ClassifiedGig(
            gig=updated,
            action=DedupAction.UPDATE,
            position=position,
            cross_source=cross_source,
        )

    def _cross_source(
        self,
        gig: Gig,
        existing: Gig,
        position: int,
        now: datetime,
        result: ClassificationResult,
    ) -> Optional[ClassifiedGig]:
        payload: Dict[str, Any] = {
            "identity_key": gig.identity_key,
            "existing_source_id": existing.source_id,
            "incoming_source_id": gig.source_id,
            "policy": self.cross_source_policy.value,
        }

        if self.cross_source_policy == CrossSourcePolicy.REJECT:
            self.sink.emit(
                "dedup.cross_source_collision", payload, level="warning", stage="dedup"
            )
            error = DedupConflictError(
                f"Gig {gig.identity_key} already belongs to source "
                f"'{existing.source_id}'",
                identity_key=gig.identity_key,
                existing_source_id=existing.source_id,
                source_id=gig.source_id,
            )
            result.conflicts.append(
                DedupConflict(gig=gig, position=position, error=error)
            )
            return None

        self.sink.emit("dedup.cross_source_collision", payload, stage="dedup")
        secondary = list(existing.secondary_sources)
        if gig.source_id not in secondary:
            secondary.append(gig.source_id)
        return self._against(
            gig,
            existing,
            position,
            now,
            source_id=existing.source_id,
            secondary_sources=secondary,
            cross_source=True,
        )
