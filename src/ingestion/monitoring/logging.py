"""Logging for ingestion runs.

Every record emitted under a run can carry the run context (run id, source
id, pipeline stage and, for record-scoped messages, the gig identity key).
Both formatters render that context; ``with_context`` binds it once so the
stage code does not repeat it on every call.
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

# Record attributes treated as run context, with their short text labels
CONTEXT_FIELDS: dict[str, str] = {
    "run_id": "run",
    "source_id": "source",
    "stage": "stage",
    "identity_key": "gig",
}

_HANDLER_MARK = "_gig_ingestion_handler"


def _context_of(record: logging.LogRecord) -> dict[str, Any]:
    return {
        name: getattr(record, name)
        for name in CONTEXT_FIELDS
        if getattr(record, name, None)
    }


# ---------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        doc: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        doc.update(_context_of(record))

        event = getattr(record, "event", None)
        if event:
            doc["event"] = event
        payload = getattr(record, "payload", None)
        if isinstance(payload, dict):
            doc["payload"] = payload
        if record.exc_info:
            doc["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(doc, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """``LEVEL logger [run=.. source=.. stage=..] message {payload}``"""

    def format(self, record: logging.LogRecord) -> str:
        line = f"{record.levelname} {record.name}"

        context = _context_of(record)
        if context:
            labels = " ".join(
                f"{CONTEXT_FIELDS[name]}={value}" for name, value in context.items()
            )
            line += f" [{labels}]"

        line += f" {record.getMessage()}"

        payload = getattr(record, "payload", None)
        if payload:
            line += " " + json.dumps(payload, ensure_ascii=False, default=str)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


# ---------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class LoggingOptions:
    level: str = "INFO"
    json_logs: bool = False
    log_file: Path | None = None
    enable_console: bool = True

    @classmethod
    def from_settings(cls, settings: Any, **overrides: Any) -> LoggingOptions:
        """Build options from the ``LOG_*`` / ``JSON_LOGS`` settings."""
        values = {
            "level": settings.LOG_LEVEL,
            "json_logs": settings.JSON_LOGS,
            "log_file": settings.LOG_FILE,
        }
        values.update(overrides)
        return cls(**values)


def _install(logger: logging.Logger, handler: logging.Handler, fmt: logging.Formatter):
    handler.setLevel(logger.level)
    handler.setFormatter(fmt)
    setattr(handler, _HANDLER_MARK, True)
    logger.addHandler(handler)


def setup_logging(
    options: LoggingOptions | None = None, *, logger_name: str | None = None
) -> logging.Logger:
    """
    Attach ingestion handlers to ``logger_name`` (root logger by default).

    Handlers installed by an earlier call are replaced; handlers added by
    anything else are left alone.
    """
    options = options or LoggingOptions()
    logger = logging.getLogger(logger_name)
    logger.setLevel(getattr(logging, options.level.upper(), logging.INFO))

    for h in list(logger.handlers):
        if getattr(h, _HANDLER_MARK, False):
            logger.removeHandler(h)
            h.close()

    fmt = JsonFormatter() if options.json_logs else TextFormatter()
    if options.enable_console:
        _install(logger, logging.StreamHandler(sys.stdout), fmt)
    if options.log_file is not None:
        path = Path(options.log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        _install(logger, logging.FileHandler(path, encoding="utf-8"), fmt)

    return logger


# ---------------------------------------------------------------------
# Context injection
# ---------------------------------------------------------------------


class ContextAdapter(logging.LoggerAdapter):
    """Bound context merged under per-call ``extra`` (per-call wins)."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def with_context(
    logger: logging.Logger | logging.LoggerAdapter, **fields: Any
) -> ContextAdapter:
    """
    Bind context fields (``run_id``, ``source_id``, ``stage``, ...) to a logger.

    Wrapping an adapter extends its context instead of nesting adapters.
    """
    extra: dict[str, Any] = {}
    if isinstance(logger, logging.LoggerAdapter):
        extra.update(logger.extra or {})
        logger = logger.logger
    extra.update({key: value for key, value in fields.items() if value})
    return ContextAdapter(logger, extra)
