"""Standardized run events for better traceability."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def emit_event(
    logger: logging.Logger | logging.LoggerAdapter,
    event: str,
    payload: dict[str, Any] | None = None,
    *,
    level: str = "info",
    stage: str | None = None,
) -> None:
    """Emit a structured event to the logger."""
    lvl = getattr(logging, level.upper(), logging.INFO)

    # The JsonFormatter picks up run_id / source_id from the record
    # when they were provided via ContextAdapter.
    extra = {
        "event": event,
        "payload": payload or {},
    }
    if stage:
        extra["stage"] = stage

    logger.log(lvl, f"Event: {event}", extra=extra)


class EventSink:
    """
    Destination for structured pipeline events.

    Events emitted by the pipeline:
    - run.started / run.stage / run.finished
    - record.failed
    - dedup.cross_source_collision
    - persist.chunk / persist.summary
    - stale.marked
    """

    def emit(
        self,
        event: str,
        payload: dict[str, Any] | None = None,
        *,
        level: str = "info",
        stage: str | None = None,
    ) -> None:
        raise NotImplementedError


class NullEventSink(EventSink):
    """Drop every event."""

    def emit(self, event, payload=None, *, level="info", stage=None) -> None:
        return None


class LoggingEventSink(EventSink):
    """Forward events to a logger through ``emit_event``."""

    def __init__(self, logger: logging.Logger | logging.LoggerAdapter | None = None):
        self.logger = logger or logging.getLogger("ingestion.events")

    def emit(self, event, payload=None, *, level="info", stage=None) -> None:
        emit_event(self.logger, event, payload, level=level, stage=stage)


@dataclass(frozen=True)
class RecordedEvent:
    event: str
    payload: dict[str, Any]
    level: str
    stage: str | None
    ts: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class MemoryEventSink(EventSink):
    """
    Keep events in memory, optionally forwarding to another sink.

    Used for run summaries and in tests.
    """

    def __init__(self, forward_to: EventSink | None = None):
        self.forward_to = forward_to
        self._events: list[RecordedEvent] = []
        self._lock = threading.Lock()

    def emit(self, event, payload=None, *, level="info", stage=None) -> None:
        with self._lock:
            self._events.append(RecordedEvent(event, dict(payload or {}), level, stage))
        if self.forward_to is not None:
            self.forward_to.emit(event, payload, level=level, stage=stage)

    @property
    def events(self) -> list[RecordedEvent]:
        with self._lock:
            return list(self._events)

    def named(self, event: str) -> list[RecordedEvent]:
        return [e for e in self.events if e.event == event]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
