"""
Observability for ingestion runs.

- events: structured events (``run.started``, ``record.failed``, ...) and sinks
- logging: JSON/text formatters, context injection and logger setup
"""

from .events import (
    EventSink,
    LoggingEventSink,
    MemoryEventSink,
    NullEventSink,
    RecordedEvent,
    emit_event,
)
from .logging import (
    ContextAdapter,
    JsonFormatter,
    LoggingOptions,
    TextFormatter,
    setup_logging,
    with_context,
)

__all__ = [
    "EventSink",
    "LoggingEventSink",
    "MemoryEventSink",
    "NullEventSink",
    "RecordedEvent",
    "emit_event",
    "ContextAdapter",
    "JsonFormatter",
    "LoggingOptions",
    "TextFormatter",
    "setup_logging",
    "with_context",
]
