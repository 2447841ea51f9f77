"""Structured logging configuration for feedbot."""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

# Context fields copied from the record into the JSON payload when present.
CONTEXT_FIELDS = (
    "execution_id",
    "component",
    "feed_name",
    "feed_url",
    "item_title",
    "chat_id",
    "command",
    "payload",
    "error",
    "items_count",
    "added",
    "removed",
    "execution_start",
    "execution_end",
    "execution_duration_seconds",
    "execution_success",
    "metrics",
)


class StructuredFormatter(logging.Formatter):
    """Custom formatter for structured JSON logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_entry[field] = getattr(record, field)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class ExecutionLogger:
    """Logger with execution context and structured logging."""

    def __init__(self, execution_id: str, component: str = "main"):
        """Initialize execution logger.

        Args:
            execution_id: Unique identifier for this execution (e.g. one cycle)
            component: Component name (e.g., 'processor', 'telegram')
        """
        self.execution_id = execution_id
        self.component = component
        self.logger = logging.getLogger(f"feedbot.{component}")
        self.start_time: datetime | None = None
        self.end_time: datetime | None = None

    def _log_with_context(self, level: int, message: str, **kwargs) -> None:
        """Log message with execution context."""
        exc_info = kwargs.pop("exc_info", None)
        extra = {
            "execution_id": self.execution_id,
            "component": self.component,
            **kwargs,
        }
        self.logger.log(level, message, extra=extra, exc_info=exc_info)

    def info(self, message: str, **kwargs) -> None:
        """Log info message with context."""
        self._log_with_context(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs) -> None:
        """Log warning message with context."""
        self._log_with_context(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs) -> None:
        """Log error message with context."""
        self._log_with_context(logging.ERROR, message, **kwargs)

    def debug(self, message: str, **kwargs) -> None:
        """Log debug message with context."""
        self._log_with_context(logging.DEBUG, message, **kwargs)

    def log_execution_start(self, **kwargs) -> None:
        """Log execution start with timestamp."""
        self.start_time = datetime.now(UTC)
        self.info(
            f"Starting {self.component} execution",
            execution_start=self.start_time.isoformat(),
            **kwargs,
        )

    def log_execution_end(self, success: bool = True, **kwargs) -> None:
        """Log execution end with timestamp and duration."""
        self.end_time = datetime.now(UTC)

        duration_seconds = None
        if self.start_time:
            duration_seconds = (self.end_time - self.start_time).total_seconds()

        self.info(
            f"Completed {self.component} execution",
            execution_end=self.end_time.isoformat(),
            execution_duration_seconds=duration_seconds,
            execution_success=success,
            **kwargs,
        )

    def log_feed_processing(self, feed_name: str, items_count: int) -> None:
        """Log feed processing with structured data."""
        self.info(
            f"Processed feed: {items_count} new items",
            feed_name=feed_name,
            items_count=items_count,
        )

    def log_item_processing(
        self, item_title: str, action: str, success: bool = True
    ) -> None:
        """Log item processing with structured data."""
        level = logging.INFO if success else logging.ERROR
        self._log_with_context(
            level,
            f"Item {action}: {item_title}",
            item_title=item_title,
            action=action,
            success=success,
        )

    def log_command(self, command: str, chat_id: int, payload: str) -> None:
        """Log a received bot command for audit."""
        self.info(
            f"Received command {command}",
            command=command,
            chat_id=chat_id,
            payload=payload,
        )

    def log_metrics(self, metrics: dict[str, Any]) -> None:
        """Log execution metrics."""
        self.info("Execution metrics", metrics=metrics)


def setup_structured_logging(log_level: str = "INFO") -> None:
    """Setup structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(StructuredFormatter())
    root_logger.addHandler(console_handler)

    # component loggers are children of "feedbot" and inherit its level
    package_logger = logging.getLogger("feedbot")
    package_logger.setLevel(level)
    package_logger.propagate = True

    # urllib3 logs every long-poll request at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def create_execution_logger(
    component: str, execution_id: str | None = None
) -> ExecutionLogger:
    """Create an execution logger for a component.

    Args:
        component: Component name
        execution_id: Optional execution ID (will generate one if not provided)

    Returns:
        ExecutionLogger instance
    """
    if not execution_id:
        execution_id = f"exec_{datetime.now(UTC).strftime('%Y%m%d_%H%M%S_%f')}"

    return ExecutionLogger(execution_id, component)
