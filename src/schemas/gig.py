# src/schemas/gig.py
"""
Canonical Gig Schema for the gig ingestion pipeline.

Every venue source, whatever its raw shape, is normalized into a ``Gig``.
The schema is the unit that is keyed, classified against stored state and
persisted; it is also the document stored by every ``DocumentStore``.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import (
    BaseModel,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError("datetime must be timezone-aware")
    return value.astimezone(timezone.utc)


# ============================================================================
# NESTED MODELS
# ============================================================================


class Venue(BaseModel):
    """Where a gig takes place. ``slug`` is the canonical, alias-resolved form."""

    name: str = Field(..., min_length=1)
    slug: str
    address: Optional[str] = None
    city: Optional[str] = None


class PriceInfo(BaseModel):
    """Ticket price as advertised by the source."""

    minimum: Optional[Decimal] = Field(None, ge=0)
    maximum: Optional[Decimal] = Field(None, ge=0)
    currency: str = "GBP"
    is_free: bool = False
    raw: Optional[str] = None

    @model_validator(mode="after")
    def validate_range(self) -> "PriceInfo":
        """Reject a maximum below the minimum."""
        if (
            self.minimum is not None
            and self.maximum is not None
            and self.maximum < self.minimum
        ):
            raise ValueError("maximum price must be >= minimum price")
        return self

    @field_serializer("minimum", "maximum")
    def serialize_decimal(self, value: Optional[Decimal]) -> Optional[float]:
        return float(value) if value is not None else None


class Performance(BaseModel):
    """One occurrence of a gig that repeats (matinee + evening, multi-night runs)."""

    parent_key: str
    occurs_at: datetime

    @field_validator("occurs_at")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)


# ============================================================================
# GIG
# ============================================================================

# Fields that describe the gig itself; any change to one of them is an update.
MUTABLE_FIELDS = (
    "title",
    "venue",
    "start",
    "end",
    "description",
    "ticket_url",
    "price",
    "performances",
)


class Gig(BaseModel):
    """
    A single live-music listing in canonical form.

    Attributes:
        identity_key: Stable key derived from source, venue, title and start
        source_id: Source that first created this gig
        canonical_title: Folded title used in the identity key
        content_hash: Hash over the mutable fields, used for change detection
        secondary_sources: Other sources that listed the same gig
        stale: Set when the source stopped listing the gig for several runs
        missed_runs: Consecutive runs of ``source_id`` that did not see the gig
    """

    identity_key: str = Field(..., min_length=1)
    source_id: str = Field(..., min_length=1)

    title: str = Field(..., min_length=1)
    canonical_title: str = Field(..., min_length=1)
    venue: Venue

    start: datetime
    end: Optional[datetime] = None

    description: Optional[str] = None
    ticket_url: Optional[str] = None
    price: Optional[PriceInfo] = None
    performances: List[Performance] = Field(default_factory=list)

    content_hash: str = ""

    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    secondary_sources: List[str] = Field(default_factory=list)
    stale: bool = False
    missed_runs: int = Field(0, ge=0)

    @field_validator("start", "end", "first_seen", "last_seen", "last_updated")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """All instants are stored timezone-aware in UTC."""
        return _as_utc(v)

    @model_validator(mode="after")
    def validate_times(self) -> "Gig":
        """End must not precede start."""
        if self.end is not None and self.end < self.start:
            raise ValueError("end must be >= start")
        return self

    def content_fields(self) -> Dict[str, Any]:
        """
        JSON-ready view of the mutable content, as used for hashing.

        The venue contributes only its slug so that cosmetic differences in
        the advertised venue name do not register as changes.
        """
        data = self.model_dump(mode="json", include=set(MUTABLE_FIELDS))
        data["venue"] = self.venue.slug
        data["performances"] = sorted(p["occurs_at"] for p in data["performances"])
        return data

    def to_document(self) -> Dict[str, Any]:
        """Serialize for a document store."""
        return self.model_dump(mode="json")

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "Gig":
        """Rebuild a gig from a stored document."""
        return cls.model_validate(document)
