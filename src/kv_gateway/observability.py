"""Structured logging and observability utilities.

JSON log lines carry request-scoped context (request id, auth mode,
operation) through context variables; metrics go to registered callbacks.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
auth_mode_var: ContextVar[str | None] = ContextVar("auth_mode", default=None)
operation_var: ContextVar[str | None] = ContextVar("operation", default=None)


class LogLevel(str, Enum):
    """Log levels matching Python's logging module."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class LogContext:
    """Context data to include with every log entry."""

    request_id: str | None = None
    auth_mode: str | None = None
    operation: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def current(cls) -> "LogContext":
        """Get current context from context variables."""
        return cls(
            request_id=request_id_var.get(),
            auth_mode=auth_mode_var.get(),
            operation=operation_var.get(),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        result: dict[str, Any] = {}
        if self.request_id:
            result["request_id"] = self.request_id
        if self.auth_mode:
            result["auth_mode"] = self.auth_mode
        if self.operation:
            result["operation"] = self.operation
        result.update(self.extra)
        return result


@dataclass
class LogEntry:
    """A structured log entry."""

    level: LogLevel
    message: str
    timestamp: str
    logger: str
    context: dict[str, Any] = field(default_factory=dict)
    error: dict[str, Any] | None = None
    duration_ms: float | None = None

    def to_json(self) -> str:
        """Serialize to JSON string."""
        data: dict[str, Any] = {
            "level": self.level.value,
            "message": self.message,
            "timestamp": self.timestamp,
            "logger": self.logger,
        }
        if self.context:
            data["context"] = self.context
        if self.error:
            data["error"] = self.error
        if self.duration_ms is not None:
            data["duration_ms"] = round(self.duration_ms, 3)
        return json.dumps(data, default=str)


class StructuredFormatter(logging.Formatter):
    """Formats log records as structured JSON."""

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as JSON."""
        context = LogContext.current().to_dict()
        if hasattr(record, "context") and isinstance(record.context, dict):
            context.update(record.context)

        error = None
        if record.exc_info:
            error = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else "Unknown",
                "message": str(record.exc_info[1]) if record.exc_info[1] else "",
            }

        entry = LogEntry(
            level=LogLevel(record.levelname),
            message=record.getMessage(),
            timestamp=datetime.now(timezone.utc).isoformat(),
            logger=record.name,
            context=context,
            error=error,
            duration_ms=getattr(record, "duration_ms", None),
        )
        return entry.to_json()


class StructuredLogger:
    """Wrapper around Python logging with structured output.

    Example:
        logger = StructuredLogger("kv_gateway.bulk")
        logger.info("Bulk write finished", context={"failed": 2})
        logger.error("Put failed", error=exception)
    """

    def __init__(self, name: str) -> None:
        """Initialize structured logger.

        Handlers and level are inherited from the ``kv_gateway`` logger set
        up by ``configure_logging``.

        Args:
            name: Logger name (typically module name)
        """
        self.logger = logging.getLogger(name)

    def _log(
        self,
        level: LogLevel,
        message: str,
        context: dict[str, Any] | None = None,
        error: Exception | None = None,
        duration_ms: float | None = None,
    ) -> None:
        """Internal log method."""
        extra: dict[str, Any] = {}
        if context:
            extra["context"] = context
        if duration_ms is not None:
            extra["duration_ms"] = duration_ms

        log_func = getattr(self.logger, level.value.lower())
        if error:
            log_func(message, exc_info=(type(error), error, error.__traceback__), extra=extra)
        else:
            log_func(message, extra=extra)

    def debug(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        duration_ms: float | None = None,
    ) -> None:
        """Log at DEBUG level."""
        self._log(LogLevel.DEBUG, message, context, duration_ms=duration_ms)

    def info(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        duration_ms: float | None = None,
    ) -> None:
        """Log at INFO level."""
        self._log(LogLevel.INFO, message, context, duration_ms=duration_ms)

    def warning(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        error: Exception | None = None,
        duration_ms: float | None = None,
    ) -> None:
        """Log at WARNING level."""
        self._log(LogLevel.WARNING, message, context, error, duration_ms)

    def error(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        error: Exception | None = None,
        duration_ms: float | None = None,
    ) -> None:
        """Log at ERROR level."""
        self._log(LogLevel.ERROR, message, context, error, duration_ms)


class RequestContext:
    """Context manager for request-scoped logging context.

    Example:
        async with RequestContext(request_id="req-123", operation="kv.bulk_write"):
            logger.info("Processing request")
    """

    def __init__(
        self,
        request_id: str | None = None,
        auth_mode: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.request_id = request_id or str(uuid.uuid4())
        self.auth_mode = auth_mode
        self.operation = operation
        self._tokens: list[tuple[ContextVar, Any]] = []

    def __enter__(self) -> "RequestContext":
        """Set context variables."""
        self._tokens.append((request_id_var, request_id_var.set(self.request_id)))
        if self.auth_mode:
            self._tokens.append((auth_mode_var, auth_mode_var.set(self.auth_mode)))
        if self.operation:
            self._tokens.append((operation_var, operation_var.set(self.operation)))
        return self

    def __exit__(self, *args: Any) -> None:
        """Reset context variables to their previous values."""
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()

    async def __aenter__(self) -> "RequestContext":
        return self.__enter__()

    async def __aexit__(self, *args: Any) -> None:
        self.__exit__(*args)


class Timer:
    """Context manager for timing operations.

    Example:
        with Timer() as t:
            await storage.put(key, value)
        logger.info("Put complete", duration_ms=t.duration_ms)
    """

    def __init__(self) -> None:
        self.start_time: float = 0
        self.end_time: float = 0

    @property
    def duration_ms(self) -> float:
        """Get duration in milliseconds."""
        return (self.end_time - self.start_time) * 1000

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        self.end_time = time.perf_counter()


# Metric collection hook type
MetricCallback = Callable[[str, float, dict[str, Any]], None]

_metric_callbacks: list[MetricCallback] = []


def register_metric_callback(callback: MetricCallback) -> None:
    """Register a callback to receive metric events.

    Args:
        callback: Function(name, value, labels) to call on metrics
    """
    _metric_callbacks.append(callback)


def clear_metric_callbacks() -> None:
    """Remove all registered metric callbacks."""
    _metric_callbacks.clear()


def emit_metric(name: str, value: float, labels: dict[str, Any] | None = None) -> None:
    """Emit a metric to all registered callbacks.

    Args:
        name: Metric name
        value: Metric value
        labels: Optional labels/dimensions
    """
    labels = dict(labels or {})

    operation = operation_var.get()
    if operation:
        labels.setdefault("operation", operation)

    for callback in _metric_callbacks:
        try:
            callback(name, value, labels)
        except Exception:
            logging.getLogger(__name__).debug("Metric callback failed", exc_info=True)


def emit_counter(name: str, labels: dict[str, Any] | None = None, value: float = 1.0) -> None:
    """Emit a counter metric."""
    emit_metric(name, value, labels)


def emit_timer(name: str, duration_ms: float, labels: dict[str, Any] | None = None) -> None:
    """Emit a timer metric."""
    emit_metric(name, duration_ms, labels)


def configure_logging(
    level: LogLevel | str = LogLevel.INFO,
    format: str = "json",
) -> None:
    """Configure the package logger.

    Args:
        level: Minimum log level
        format: Output format ("json" or "text")
    """
    level = LogLevel(level.upper()) if isinstance(level, str) else level

    root_logger = logging.getLogger("kv_gateway")
    root_logger.setLevel(level.value)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if format == "json":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        ))
    root_logger.addHandler(handler)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger for a module.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured structured logger
    """
    return StructuredLogger(name)
