"""
Gig Normalizer.

Turns one raw listing record into a canonical ``Gig`` or raises
``NormalizationError``. Pure: no I/O, no clock reads unless ``now`` is omitted.

Raw records are loosely shaped; each canonical field is looked up under a
small set of common names (see ``FIELD_ALIASES``). Adapters with unusual
payloads map their fields onto these names first (see ``FieldMapper``).
"""

import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from src.configs.config import IdentityScope, SourceConfig
from src.ingestion.deduplication import (
    GLOBAL_NAMESPACE,
    compute_content_hash,
    compute_identity_key,
)
from src.ingestion.errors import (
    ExtractError,
    NormalizationError,
    NormalizationErrorKind,
)
from src.ingestion.normalization.dates import combine_date_and_time, parse_datetime
from src.ingestion.normalization.price import PriceParser
from src.ingestion.normalization.text import (
    VenueCanonicalizer,
    canonical_title,
    collapse_whitespace,
)
from src.schemas.gig import Gig, Performance, PriceInfo, Venue

logger = logging.getLogger(__name__)

RawRecord = Dict[str, Any]

FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "title": ("title", "name", "event_name", "headline"),
    "venue": ("venue", "venue_name", "location"),
    "venue_address": ("venue_address", "address"),
    "city": ("city", "venue_city"),
    "start": ("start", "start_datetime", "starts_at", "datetime"),
    "date": ("date", "event_date"),
    "time": ("time", "start_time", "doors"),
    "end": ("end", "end_datetime", "ends_at"),
    "description": ("description", "summary", "details"),
    "ticket_url": ("ticket_url", "tickets_url", "url", "link"),
    "price": ("price", "prices", "cost"),
    "occurrences": ("dates", "occurrences", "performances"),
}


def extract_record(raw: Any) -> RawRecord:
    """
    Check that a raw record is a mapping of fields and return a plain dict.

    Raises:
        ExtractError: For anything that is not a mapping
    """
    if not isinstance(raw, Mapping):
        raise ExtractError(f"Raw record is {type(raw).__name__}, expected a mapping")
    return dict(raw)


def _first(raw: Mapping, field: str) -> Any:
    for name in FIELD_ALIASES[field]:
        value = raw.get(name)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


class GigNormalizer:
    """
    Normalizer bound to one source's configuration.

    Example:
        normalizer = GigNormalizer(source_config)
        gig = normalizer.normalize({"title": "...", "venue": "...", "date": "..."})
    """

    def __init__(self, source_config: SourceConfig):
        self.config = source_config
        self.venues = VenueCanonicalizer(source_config.resolved_aliases())
        self.tz = source_config.tz
        self.formats = tuple(source_config.date_formats)
        self.currency = source_config.options.get("currency", "GBP")

    @property
    def key_namespace(self) -> str:
        if self.config.identity_scope == IdentityScope.GLOBAL:
            return GLOBAL_NAMESPACE
        return self.config.source_id

    # ========================================================================
    # ENTRY POINT
    # ========================================================================

    def normalize(self, raw: Any, now: Optional[datetime] = None) -> Gig:
        """
        Normalize one raw record.

        Args:
            raw: Raw record produced by the source adapter
            now: Reference instant for relative dates ("tonight")

        Returns:
            Gig with identity key and content hash set; seen timestamps unset

        Raises:
            ExtractError: Record is not a mapping
            NormalizationError: MissingField, InvalidDate or InvalidVenue
        """
        record = extract_record(raw)
        now = now or datetime.now(timezone.utc)

        title = self._title(record)
        venue = self._venue(record)
        start, occurrences = self._start(record, now)
        end = self._end(record, start, now)

        key = compute_identity_key(
            self.key_namespace, venue.slug, canonical_title(title), start
        )
        performances = [
            Performance(parent_key=key, occurs_at=occurs_at)
            for occurs_at in occurrences
        ]

        gig = Gig(
            identity_key=key,
            source_id=self.config.source_id,
            title=title,
            canonical_title=canonical_title(title),
            venue=venue,
            start=start,
            end=end,
            description=self._optional_text(record, "description"),
            ticket_url=self._optional_text(record, "ticket_url"),
            price=self._price(record),
            performances=performances,
        )
        gig.content_hash = compute_content_hash(gig)
        return gig

    # ========================================================================
    # FIELDS
    # ========================================================================

    def _missing(self, field: str) -> NormalizationError:
        return NormalizationError(
            NormalizationErrorKind.MISSING_FIELD,
            f"Required field '{field}' is missing or empty",
            field=field,
            source_id=self.config.source_id,
        )

    def _title(self, record: RawRecord) -> str:
        title = collapse_whitespace(_first(record, "title"))
        if not title or not canonical_title(title):
            raise self._missing("title")
        return title

    def _venue(self, record: RawRecord) -> Venue:
        raw_venue = _first(record, "venue")
        address = _first(record, "venue_address")
        city = _first(record, "city")
        if isinstance(raw_venue, Mapping):
            address = raw_venue.get("address") or address
            city = raw_venue.get("city") or city
            raw_venue = raw_venue.get("name")

        name = collapse_whitespace(raw_venue)
        if not name:
            raise self._missing("venue")

        slug = self.venues.slug(name)
        if not slug:
            raise NormalizationError(
                NormalizationErrorKind.INVALID_VENUE,
                f"Venue {name!r} has no usable canonical form",
                field="venue",
                source_id=self.config.source_id,
            )
        return Venue(
            name=self.venues.canonical_name(name),
            slug=slug,
            address=collapse_whitespace(address) or None,
            city=collapse_whitespace(city) or None,
        )

    def _parse_when(self, value: Any, time_value: Any, now: datetime) -> datetime:
        if isinstance(value, Mapping):
            time_value = value.get("time", time_value)
            value = value.get("start") or value.get("date")
        if time_value is not None and value is not None:
            return combine_date_and_time(
                value, time_value, self.tz, formats=self.formats, now=now
            )
        return parse_datetime(value, self.tz, formats=self.formats, now=now)

    def _start(
        self, record: RawRecord, now: datetime
    ) -> Tuple[datetime, List[datetime]]:
        """Start instant plus the sorted occurrences of a repeating gig."""
        time_value = _first(record, "time")
        explicit = _first(record, "start")
        if explicit is None:
            explicit = _first(record, "date")

        occurrences: List[datetime] = []
        raw_occurrences = _first(record, "occurrences")
        if isinstance(raw_occurrences, (list, tuple)):
            occurrences = sorted(
                {self._parse_when(item, None, now) for item in raw_occurrences if item}
            )

        if explicit is None and not occurrences:
            raise self._missing("start")

        candidates = list(occurrences)
        if explicit is not None:
            candidates.append(self._parse_when(explicit, time_value, now))
        start = min(candidates)

        if len(occurrences) < 2:
            return start, []
        if start not in occurrences:
            occurrences = sorted(occurrences + [start])
        return start, occurrences

    def _end(
        self, record: RawRecord, start: datetime, now: datetime
    ) -> Optional[datetime]:
        raw_end = _first(record, "end")
        if raw_end is None:
            return None
        end = parse_datetime(raw_end, self.tz, formats=self.formats, now=now)
        if end < start:
            raise NormalizationError(
                NormalizationErrorKind.INVALID_DATE,
                f"End {end.isoformat()} is before start {start.isoformat()}",
                field="end",
                source_id=self.config.source_id,
            )
        return end

    def _optional_text(self, record: RawRecord, field: str) -> Optional[str]:
        return collapse_whitespace(_first(record, field)) or None

    def _price(self, record: RawRecord) -> Optional[PriceInfo]:
        raw_price = _first(record, "price")
        try:
            return PriceParser.parse(raw_price, self.currency)
        except ValueError as e:
            # Inconsistent structured prices are dropped, not fatal to the gig
            logger.debug(f"Ignoring unparseable price {raw_price!r}: {e}")
            return None


def normalize(
    raw_record: Any, source_config: SourceConfig, now: Optional[datetime] = None
) -> Gig:
    """Normalize one raw record; see ``GigNormalizer.normalize``."""
    return GigNormalizer(source_config).normalize(raw_record, now=now)
