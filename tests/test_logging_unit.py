"""Unit tests for structured logging."""

import json
import logging
import sys

from feedbot.logging_config import (
    ExecutionLogger,
    StructuredFormatter,
    create_execution_logger,
    setup_structured_logging,
)


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="feedbot.processor",
        level=logging.INFO,
        pathname=__file__,
        lineno=10,
        msg="Processed feed: %d new items",
        args=(3,),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatterUnit:
    """Unit tests for the JSON formatter."""

    def test_formats_message_and_context(self):
        output = StructuredFormatter().format(
            _record(execution_id="cycle_1", component="processor", feed_name="news")
        )

        entry = json.loads(output)
        assert entry["message"] == "Processed feed: 3 new items"
        assert entry["level"] == "INFO"
        assert entry["logger"] == "feedbot.processor"
        assert entry["execution_id"] == "cycle_1"
        assert entry["feed_name"] == "news"
        assert "chat_id" not in entry

    def test_non_json_values_are_stringified(self):
        output = StructuredFormatter().format(_record(metrics={"at": object()}))

        assert "metrics" in json.loads(output)

    def test_exception_is_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = _record()
            record.exc_info = sys.exc_info()

        entry = json.loads(StructuredFormatter().format(record))
        assert "RuntimeError: boom" in entry["exception"]


class TestExecutionLoggerUnit:
    """Unit tests for the context-carrying logger."""

    def test_context_is_attached(self, caplog):
        logger = ExecutionLogger("exec_1", "store")

        with caplog.at_level(logging.DEBUG, logger="feedbot.store"):
            logger.warning("Failed", feed_name="news", error="disk full")

        record = caplog.records[-1]
        assert record.name == "feedbot.store"
        assert record.levelno == logging.WARNING
        assert record.execution_id == "exec_1"
        assert record.component == "store"
        assert record.feed_name == "news"
        assert record.error == "disk full"

    def test_exc_info_is_forwarded(self, caplog):
        logger = ExecutionLogger("exec_1", "processor")

        with caplog.at_level(logging.ERROR, logger="feedbot.processor"):
            try:
                raise ValueError("bad")
            except ValueError:
                logger.error("Feed unit failed", exc_info=True)

        assert caplog.records[-1].exc_info is not None

    def test_command_is_audited(self, caplog):
        logger = create_execution_logger("bot")

        with caplog.at_level(logging.INFO, logger="feedbot.bot"):
            logger.log_command("/start", 42, "ref-code")

        entry = json.loads(StructuredFormatter().format(caplog.records[-1]))
        assert entry["command"] == "/start"
        assert entry["chat_id"] == 42
        assert entry["payload"] == "ref-code"

    def test_error_and_duration_reach_the_json_output(self, caplog):
        logger = create_execution_logger("processor", "cycle_1")

        with caplog.at_level(logging.INFO, logger="feedbot.processor"):
            logger.log_execution_start()
            logger.log_execution_end(success=False)
            logger.error("Failed to list feeds", error="registry unavailable")

        end_entry = json.loads(StructuredFormatter().format(caplog.records[-2]))
        error_entry = json.loads(StructuredFormatter().format(caplog.records[-1]))
        assert end_entry["execution_success"] is False
        assert end_entry["execution_duration_seconds"] >= 0
        assert error_entry["error"] == "registry unavailable"

    def test_generated_execution_id(self):
        assert create_execution_logger("main").execution_id.startswith("exec_")


class TestSetupLoggingUnit:
    """Unit tests for logging setup."""

    def test_setup_installs_structured_handler(self):
        root_logger = logging.getLogger()
        original_level = root_logger.level
        original_handlers = root_logger.handlers[:]
        try:
            setup_structured_logging("DEBUG")

            assert root_logger.level == logging.DEBUG
            assert len(root_logger.handlers) == 1
            assert isinstance(root_logger.handlers[0].formatter, StructuredFormatter)
            assert logging.getLogger("urllib3").level == logging.WARNING
        finally:
            root_logger.handlers[:] = original_handlers
            root_logger.setLevel(original_level)
