# src/schemas/runs.py
"""
Run bookkeeping schemas.

A ``ScraperRun`` is opened when a source starts ingesting and closed exactly
once with its aggregate counts. Every record that fails along the way is
captured as an append-only ``ErrorLogEntry``.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


# ============================================================================
# ENUMS
# ============================================================================


class RunStatus(str, Enum):
    """Outcome of a run as stored on the ScraperRun."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


class RunStage(str, Enum):
    """States a run moves through, in order."""

    PENDING = "pending"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    NORMALIZING = "normalizing"
    DEDUPLICATING = "deduplicating"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            RunStage.COMPLETED,
            RunStage.PARTIALLY_FAILED,
            RunStage.FAILED,
        )


class ErrorStage(str, Enum):
    """Pipeline stage at which a record failed."""

    FETCH = "fetch"
    EXTRACT = "extract"
    NORMALIZE = "normalize"
    DEDUP = "dedup"
    PERSIST = "persist"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ============================================================================
# MODELS
# ============================================================================


class RunCounts(BaseModel):
    """
    Aggregate record counts for a run.

    A closed run always balances:
    ``failed + created + updated + unchanged + skipped == scraped``.
    """

    scraped: int = Field(0, ge=0)
    created: int = Field(0, ge=0)
    updated: int = Field(0, ge=0)
    unchanged: int = Field(0, ge=0)
    failed: int = Field(0, ge=0)
    skipped: int = Field(0, ge=0)

    @property
    def accounted(self) -> int:
        return (
            self.failed + self.created + self.updated + self.unchanged + self.skipped
        )

    @property
    def is_balanced(self) -> bool:
        return self.accounted == self.scraped


class ScraperRun(BaseModel):
    """One execution of one source."""

    model_config = ConfigDict(use_enum_values=True)

    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source_id: str = Field(..., min_length=1)
    started_at: datetime = Field(default_factory=_utc_now)
    ended_at: Optional[datetime] = None
    status: RunStatus = RunStatus.RUNNING
    stage: RunStage = RunStage.PENDING
    counts: RunCounts = Field(default_factory=RunCounts)

    # Set only for run-fatal failures
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @property
    def is_closed(self) -> bool:
        return self.ended_at is not None

    @property
    def duration_seconds(self) -> Optional[float]:
        """Wall-clock duration, ``None`` while the run is still open."""
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()


class ErrorLogEntry(BaseModel):
    """A single record-level (or run-fatal) failure. Never mutated once written."""

    model_config = ConfigDict(use_enum_values=True, frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    source_id: str
    stage: ErrorStage
    kind: str
    message: str
    raw_payload: Optional[Any] = None
    identity_key: Optional[str] = None
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    timestamp: datetime = Field(default_factory=_utc_now)
