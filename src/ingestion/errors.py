"""
Ingestion error taxonomy.

Record-scoped errors (extract, normalize, dedup, persist) are caught at the
stage that raised them and written to the error log; the run continues.
Run-fatal errors (fetch with nothing fetched, store unavailable, timeout) end
the run as ``failed`` and surface to the caller as ``RunFailedError``.
"""

from enum import Enum
from typing import Optional

from src.schemas.runs import ErrorSeverity, ErrorStage, ScraperRun


class IngestionError(Exception):
    """Base class for every error raised by the ingestion pipeline."""

    stage: Optional[ErrorStage] = None
    severity: ErrorSeverity = ErrorSeverity.MEDIUM

    def __init__(self, message: str, *, source_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.source_id = source_id

    @property
    def kind(self) -> str:
        """Classification written to the error log."""
        return type(self).__name__


# ============================================================================
# RECORD-SCOPED
# ============================================================================


class ExtractError(IngestionError):
    """A raw record could not be read as a mapping of fields."""

    stage = ErrorStage.EXTRACT
    severity = ErrorSeverity.LOW


class NormalizationErrorKind(str, Enum):
    MISSING_FIELD = "MissingField"
    INVALID_DATE = "InvalidDate"
    INVALID_VENUE = "InvalidVenue"


class NormalizationError(IngestionError):
    """A raw record could not be turned into a Gig."""

    stage = ErrorStage.NORMALIZE
    severity = ErrorSeverity.LOW

    def __init__(
        self,
        error_kind: NormalizationErrorKind,
        message: str,
        *,
        field: Optional[str] = None,
        source_id: Optional[str] = None,
    ):
        super().__init__(message, source_id=source_id)
        self.error_kind = NormalizationErrorKind(error_kind)
        self.field = field

    @property
    def kind(self) -> str:
        return self.error_kind.value


class DedupConflictError(IngestionError):
    """A gig collided with one owned by another source under the reject policy."""

    stage = ErrorStage.DEDUP

    def __init__(
        self,
        message: str,
        *,
        identity_key: str,
        existing_source_id: str,
        source_id: Optional[str] = None,
    ):
        super().__init__(message, source_id=source_id)
        self.identity_key = identity_key
        self.existing_source_id = existing_source_id


class PersistenceError(IngestionError):
    """The store rejected a write for one record."""

    stage = ErrorStage.PERSIST
    severity = ErrorSeverity.HIGH

    def __init__(
        self,
        message: str,
        *,
        identity_key: Optional[str] = None,
        source_id: Optional[str] = None,
    ):
        super().__init__(message, source_id=source_id)
        self.identity_key = identity_key


# ============================================================================
# RUN-FATAL
# ============================================================================


class FetchError(IngestionError):
    """The adapter could not produce listings."""

    stage = ErrorStage.FETCH
    severity = ErrorSeverity.HIGH


class StoreUnavailableError(IngestionError):
    """The document store cannot be reached."""

    severity = ErrorSeverity.CRITICAL


class RunTimeoutError(IngestionError):
    """A run exceeded its wall-clock budget."""

    severity = ErrorSeverity.HIGH


class RunFailedError(IngestionError):
    """
    Summary error for a run that ended as ``failed``.

    Carries the closed ``ScraperRun`` and the fatal error that ended it.
    """

    severity = ErrorSeverity.CRITICAL

    def __init__(self, run: ScraperRun, cause: IngestionError):
        super().__init__(
            f"Run {run.run_id} for '{run.source_id}' failed: {cause.message}",
            source_id=run.source_id,
        )
        self.run = run
        self.cause = cause


# ============================================================================
# OTHER
# ============================================================================


class RunInProgressError(IngestionError):
    """A run for this source is already in flight."""

    severity = ErrorSeverity.LOW


class ConfigError(IngestionError):
    """Invalid or missing configuration."""

    severity = ErrorSeverity.CRITICAL
