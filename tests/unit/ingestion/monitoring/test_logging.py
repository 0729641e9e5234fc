import json
import logging

import pytest

from src.configs.settings import Settings
from src.ingestion.monitoring.logging import (
    ContextAdapter,
    JsonFormatter,
    LoggingOptions,
    TextFormatter,
    setup_logging,
    with_context,
)


def make_record(**extra):
    record = logging.LogRecord(
        name="pipeline.the-croft",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Fetched %d listings",
        args=(3,),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatters:
    def test_json_formatter(self):
        line = JsonFormatter().format(
            make_record(run_id="r1", source_id="the-croft", payload={"n": 3})
        )
        data = json.loads(line)
        assert data["msg"] == "Fetched 3 listings"
        assert data["level"] == "INFO"
        assert data["run_id"] == "r1"
        assert data["source_id"] == "the-croft"
        assert data["payload"] == {"n": 3}
        assert "stage" not in data

    def test_text_formatter_with_context(self):
        line = TextFormatter().format(make_record(source_id="the-croft", stage="fetching"))
        assert line == (
            "INFO pipeline.the-croft [source=the-croft stage=fetching] Fetched 3 listings"
        )

    def test_text_formatter_identity_key_and_payload(self):
        line = TextFormatter().format(
            make_record(identity_key="the-croft|abc", payload={"n": 3})
        )
        assert line == (
            'INFO pipeline.the-croft [gig=the-croft|abc] Fetched 3 listings {"n": 3}'
        )

    def test_json_formatter_timestamp_and_event(self):
        record = make_record(event="run.started")
        record.created = 0
        data = json.loads(JsonFormatter().format(record))
        assert data["ts"] == "1970-01-01T00:00:00+00:00"
        assert data["event"] == "run.started"

    def test_text_formatter_plain(self):
        assert TextFormatter().format(make_record()) == (
            "INFO pipeline.the-croft Fetched 3 listings"
        )


class TestWithContext:
    def test_context_injected(self, caplog):
        logger = with_context(logging.getLogger("test.ctx"), run_id="r1", source_id="s")
        with caplog.at_level(logging.INFO, logger="test.ctx"):
            logger.info("hello")
        assert caplog.records[0].run_id == "r1"
        assert caplog.records[0].source_id == "s"

    def test_nested_context_merges(self):
        outer = with_context(logging.getLogger("test.ctx"), source_id="s")
        inner = with_context(outer, run_id="r1")
        assert isinstance(inner, ContextAdapter)
        assert inner.extra == {"source_id": "s", "run_id": "r1"}
        assert inner.logger is logging.getLogger("test.ctx")

    def test_call_extra_wins(self, caplog):
        logger = with_context(logging.getLogger("test.ctx"), stage="fetching")
        with caplog.at_level(logging.INFO, logger="test.ctx"):
            logger.info("x", extra={"stage": "persisting"})
        assert caplog.records[0].stage == "persisting"


class TestSetupLogging:
    @pytest.fixture
    def logger_name(self):
        name = "test.setup"
        yield name
        logger = logging.getLogger(name)
        for h in list(logger.handlers):
            logger.removeHandler(h)
            h.close()

    def test_console_handler(self, logger_name):
        logger = setup_logging(LoggingOptions(level="DEBUG"), logger_name=logger_name)
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, TextFormatter)

    def test_idempotent(self, logger_name):
        setup_logging(logger_name=logger_name)
        logger = setup_logging(LoggingOptions(json_logs=True), logger_name=logger_name)
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, JsonFormatter)

    def test_options_from_settings(self, logger_name):
        settings = Settings(_env_file=None, LOG_LEVEL="WARNING", JSON_LOGS=True)
        options = LoggingOptions.from_settings(settings, enable_console=False)
        assert options == LoggingOptions(
            level="WARNING", json_logs=True, enable_console=False
        )
        logger = setup_logging(options, logger_name=logger_name)
        assert logger.level == logging.WARNING
        assert logger.handlers == []

    def test_file_handler(self, logger_name, tmp_path):
        log_file = tmp_path / "logs" / "ingestion.log"
        logger = setup_logging(
            LoggingOptions(log_file=log_file, enable_console=False, json_logs=True),
            logger_name=logger_name,
        )
        logger.info("written")
        for h in logger.handlers:
            h.flush()
        assert json.loads(log_file.read_text(encoding="utf-8"))["msg"] == "written"
