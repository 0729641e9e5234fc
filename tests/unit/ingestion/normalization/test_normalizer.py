"""
Unit tests for the gig normalizer.
"""

from datetime import datetime, timezone

import pytest

from src.configs.config import IdentityScope
from src.ingestion.deduplication import compute_content_hash
from src.ingestion.errors import ExtractError, NormalizationError
from src.ingestion.normalization.normalizer import (
    GigNormalizer,
    extract_record,
    normalize,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestNormalize:
    """Tests for the happy path."""

    def test_basic_record(self, make_raw_listing, source_config):
        gig = normalize(make_raw_listing(), source_config, now=NOW)
        assert gig.title == "The Wedding Present"
        assert gig.canonical_title == "the wedding present"
        assert gig.source_id == "test-venue"
        assert gig.venue.name == "The Croft"
        assert gig.venue.slug == "the-croft"
        assert gig.start == utc(2024, 6, 15, 18, 30)
        assert gig.price.minimum == 15
        assert gig.ticket_url == "https://tickets.example.org/wedding-present"
        assert gig.identity_key
        assert gig.content_hash == compute_content_hash(gig)

    def test_seen_timestamps_unset(self, make_raw_listing, source_config):
        gig = normalize(make_raw_listing(), source_config, now=NOW)
        assert gig.first_seen is None
        assert gig.last_seen is None

    def test_alternative_field_names(self, source_config):
        gig = normalize(
            {
                "name": "Idles",
                "venue_name": "The Croft",
                "starts_at": "2024-06-15T19:30:00+01:00",
                "summary": "  Loud   band ",
            },
            source_config,
            now=NOW,
        )
        assert gig.title == "Idles"
        assert gig.start == utc(2024, 6, 15, 18, 30)
        assert gig.description == "Loud band"

    def test_structured_venue(self, make_raw_listing, source_config):
        raw = make_raw_listing(
            venue={"name": "The Croft", "address": "117 Stokes Croft", "city": "Bristol"}
        )
        gig = normalize(raw, source_config, now=NOW)
        assert gig.venue.address == "117 Stokes Croft"
        assert gig.venue.city == "Bristol"

    def test_alias_resolves_venue(self, make_raw_listing, source_config):
        gig = normalize(make_raw_listing(venue="the croft, BRISTOL"), source_config, now=NOW)
        assert gig.venue.name == "The Croft"
        assert gig.venue.slug == "the-croft"

    def test_end_time(self, make_raw_listing, source_config):
        gig = normalize(
            make_raw_listing(end="2024-06-15 23:00"), source_config, now=NOW
        )
        assert gig.end == utc(2024, 6, 15, 22, 0)

    def test_relative_date(self, make_raw_listing, source_config):
        gig = normalize(
            make_raw_listing(date="tonight", time="8pm"), source_config, now=NOW
        )
        assert gig.start == utc(2024, 6, 1, 19, 0)

    def test_unparseable_price_dropped(self, make_raw_listing, source_config):
        gig = normalize(
            make_raw_listing(price={"min": 20, "max": 10}), source_config, now=NOW
        )
        assert gig.price is None


class TestRepeatingGigs:
    """Tests for listings carrying several performances."""

    def test_occurrences_become_performances(self, source_config):
        raw = {
            "title": "Residency",
            "venue": "The Croft",
            "dates": ["2024-06-16 19:30", "2024-06-15 19:30", "2024-06-17 19:30"],
        }
        gig = normalize(raw, source_config, now=NOW)
        assert gig.start == utc(2024, 6, 15, 18, 30)
        assert [p.occurs_at for p in gig.performances] == [
            utc(2024, 6, 15, 18, 30),
            utc(2024, 6, 16, 18, 30),
            utc(2024, 6, 17, 18, 30),
        ]
        assert all(p.parent_key == gig.identity_key for p in gig.performances)

    def test_single_occurrence_is_plain_gig(self, source_config):
        raw = {"title": "One Off", "venue": "The Croft", "dates": ["2024-06-15 19:30"]}
        gig = normalize(raw, source_config, now=NOW)
        assert gig.performances == []
        assert gig.start == utc(2024, 6, 15, 18, 30)

    def test_explicit_start_earlier_than_occurrences(self, source_config):
        raw = {
            "title": "Run",
            "venue": "The Croft",
            "start": "2024-06-14 19:30",
            "dates": ["2024-06-15 19:30", "2024-06-16 19:30"],
        }
        gig = normalize(raw, source_config, now=NOW)
        assert gig.start == utc(2024, 6, 14, 18, 30)
        assert len(gig.performances) == 3

    def test_occurrence_mappings(self, source_config):
        raw = {
            "title": "Matinee and Evening",
            "venue": "The Croft",
            "dates": [
                {"date": "2024-06-15", "time": "14:00"},
                {"date": "2024-06-15", "time": "19:30"},
            ],
        }
        gig = normalize(raw, source_config, now=NOW)
        assert gig.start == utc(2024, 6, 15, 13, 0)
        assert len(gig.performances) == 2


class TestNormalizationErrors:
    """Each rejected record raises with the matching kind."""

    @pytest.mark.parametrize("missing", ["title", "venue"])
    def test_missing_required_field(self, make_raw_listing, source_config, missing):
        raw = make_raw_listing(**{missing: None})
        with pytest.raises(NormalizationError) as exc_info:
            normalize(raw, source_config, now=NOW)
        assert exc_info.value.kind == "MissingField"
        assert exc_info.value.field == missing

    def test_missing_start(self, make_raw_listing, source_config):
        with pytest.raises(NormalizationError) as exc_info:
            normalize(make_raw_listing(date=None, time=None), source_config, now=NOW)
        assert exc_info.value.kind == "MissingField"

    def test_blank_title_is_missing(self, make_raw_listing, source_config):
        with pytest.raises(NormalizationError) as exc_info:
            normalize(make_raw_listing(title="   "), source_config, now=NOW)
        assert exc_info.value.kind == "MissingField"

    def test_punctuation_only_title_is_missing(self, make_raw_listing, source_config):
        with pytest.raises(NormalizationError) as exc_info:
            normalize(make_raw_listing(title="!!!"), source_config, now=NOW)
        assert exc_info.value.kind == "MissingField"

    def test_invalid_date(self, make_raw_listing, source_config):
        with pytest.raises(NormalizationError) as exc_info:
            normalize(make_raw_listing(date="soon-ish", time=None), source_config, now=NOW)
        assert exc_info.value.kind == "InvalidDate"

    def test_end_before_start(self, make_raw_listing, source_config):
        with pytest.raises(NormalizationError) as exc_info:
            normalize(make_raw_listing(end="2024-06-15 18:00"), source_config, now=NOW)
        assert exc_info.value.kind == "InvalidDate"
        assert exc_info.value.field == "end"

    def test_invalid_venue(self, make_raw_listing, source_config):
        with pytest.raises(NormalizationError) as exc_info:
            normalize(make_raw_listing(venue="東京ドーム"), source_config, now=NOW)
        assert exc_info.value.kind == "InvalidVenue"

    def test_error_carries_source(self, make_raw_listing, source_config):
        with pytest.raises(NormalizationError) as exc_info:
            normalize(make_raw_listing(title=None), source_config, now=NOW)
        assert exc_info.value.source_id == "test-venue"

    def test_not_a_mapping(self, source_config):
        with pytest.raises(ExtractError):
            normalize(["title", "venue"], source_config, now=NOW)


class TestIdentityKeyStability:
    """Superficial formatting differences must not change the key."""

    def test_formatting_differences(self, make_raw_listing, source_config):
        a = normalize(make_raw_listing(), source_config, now=NOW)
        b = normalize(
            make_raw_listing(
                title="  the WEDDING   present! ",
                venue="The Croft, Bristol",
                date="Sat 15th June 2024",
                time="7.30pm",
            ),
            source_config,
            now=NOW,
        )
        assert a.identity_key == b.identity_key

    def test_iso_and_local_formats_agree(self, make_raw_listing, source_config):
        a = normalize(make_raw_listing(), source_config, now=NOW)
        b = normalize(
            make_raw_listing(date=None, time=None, start="2024-06-15T18:30:00Z"),
            source_config,
            now=NOW,
        )
        assert a.identity_key == b.identity_key

    def test_different_start_changes_key(self, make_raw_listing, source_config):
        a = normalize(make_raw_listing(), source_config, now=NOW)
        b = normalize(make_raw_listing(time="20:30"), source_config, now=NOW)
        assert a.identity_key != b.identity_key

    def test_key_scoped_to_source(self, make_raw_listing, make_source_config):
        a = normalize(make_raw_listing(), make_source_config("a"), now=NOW)
        b = normalize(make_raw_listing(), make_source_config("b"), now=NOW)
        assert a.identity_key != b.identity_key

    def test_global_scope_shares_keys(self, make_raw_listing, make_source_config):
        a = make_source_config("a", identity_scope=IdentityScope.GLOBAL)
        b = make_source_config("b", identity_scope=IdentityScope.GLOBAL)
        assert (
            normalize(make_raw_listing(), a, now=NOW).identity_key
            == normalize(make_raw_listing(), b, now=NOW).identity_key
        )

    def test_price_change_keeps_key_changes_hash(self, make_raw_listing, source_config):
        a = normalize(make_raw_listing(), source_config, now=NOW)
        b = normalize(make_raw_listing(price="£18"), source_config, now=NOW)
        assert a.identity_key == b.identity_key
        assert a.content_hash != b.content_hash


class TestGigNormalizer:
    def test_key_namespace(self, make_source_config):
        assert GigNormalizer(make_source_config("a")).key_namespace == "a"
        glob = make_source_config("a", identity_scope=IdentityScope.GLOBAL)
        assert GigNormalizer(glob).key_namespace == "*"

    def test_extract_record_copies(self):
        raw = {"title": "x"}
        record = extract_record(raw)
        assert record == raw
        assert record is not raw
