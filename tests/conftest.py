"""
Shared pytest fixtures for the gig ingestion test suite.

Provides factory fixtures for source configs, raw listings and gigs, plus an
in-memory store and an event sink that records what the pipeline emitted.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import pytest

from src.configs.config import SourceConfig
from src.ingestion.monitoring.events import MemoryEventSink
from src.ingestion.normalization.normalizer import normalize
from src.ingestion.storage.memory import InMemoryDocumentStore
from src.schemas.gig import Gig

FIXED_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def fixed_now() -> datetime:
    """Reference instant used as 'now' across tests."""
    return FIXED_NOW


@pytest.fixture
def make_source_config():
    """
    Return a function that creates SourceConfig objects with sensible defaults.

    Example:
        config = make_source_config(source_id="bristol-exchange", batch_size_limit=2)
    """

    def _make_source_config(
        source_id: str = "test-venue", **kwargs: Any
    ) -> SourceConfig:
        defaults: Dict[str, Any] = {
            "source_id": source_id,
            "adapter": "static",
            "timezone_default": "Europe/London",
            "venue_aliases": {"The Croft, Bristol": "The Croft"},
            "options": {"records": []},
        }
        defaults.update(kwargs)
        return SourceConfig(**defaults)

    return _make_source_config


@pytest.fixture
def source_config(make_source_config) -> SourceConfig:
    return make_source_config()


@pytest.fixture
def make_raw_listing():
    """
    Return a function that creates raw listing records as an adapter yields them.

    All fields can be overridden; pass ``None`` to drop a field.
    """

    def _make_raw_listing(**kwargs: Any) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "title": "The Wedding Present",
            "venue": "The Croft",
            "date": "2024-06-15",
            "time": "19:30",
            "price": "£15",
            "ticket_url": "https://tickets.example.org/wedding-present",
        }
        record.update(kwargs)
        return {k: v for k, v in record.items() if v is not None}

    return _make_raw_listing


@pytest.fixture
def make_gig(make_raw_listing, source_config):
    """
    Return a function that creates normalized Gig objects.

    Gigs are produced by the real normalizer so that keys and hashes are
    consistent with what the pipeline computes.

    Example:
        gig = make_gig(title="Idles", date="2024-07-01")
    """

    def _make_gig(
        config: Optional[SourceConfig] = None, **raw_overrides: Any
    ) -> Gig:
        raw = make_raw_listing(**raw_overrides)
        return normalize(raw, config or source_config, now=FIXED_NOW)

    return _make_gig


@pytest.fixture
def memory_store() -> InMemoryDocumentStore:
    """Fresh in-memory document store."""
    return InMemoryDocumentStore()


@pytest.fixture
def event_sink() -> MemoryEventSink:
    """Event sink that keeps every emitted event."""
    return MemoryEventSink()


class RejectingStore(InMemoryDocumentStore):
    """In-memory store that refuses writes for selected identity keys."""

    def __init__(self, reject_keys=()):
        super().__init__()
        self.reject_keys = set(reject_keys)
        self.bulk_calls = 0

    def bulk_upsert(self, operations):
        self.bulk_calls += 1
        return super().bulk_upsert(operations)

    def _apply(self, op):
        if op.identity_key in self.reject_keys:
            raise ValueError(f"constraint violated for {op.identity_key}")
        super()._apply(op)


@pytest.fixture
def make_rejecting_store():
    """
    Return a function that creates stores rejecting writes for given keys.

    Example:
        store = make_rejecting_store({gig.identity_key})
    """

    def _make_rejecting_store(reject_keys=()) -> RejectingStore:
        return RejectingStore(reject_keys)

    return _make_rejecting_store
