"""
Logging setup for the lookup service.

Every record can carry the id of the HTTP request it belongs to and the
lookup it was emitted from; both live in context variables so driver
callbacks and nested helpers pick them up without passing them around.
"""

import json
import logging
import time
import uuid
from typing import Any
from contextvars import ContextVar

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
operation_var: ContextVar[str] = ContextVar("operation", default="")

# Attributes every LogRecord has; anything else came in through ``extra=``
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None)).keys()
) | {"message", "asctime", "taskName"}

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line.

    Always present: timestamp, level, logger, message. Added when set:
    request_id, operation, every ``extra=`` field, and the formatted
    exception.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, var in (("request_id", request_id_var), ("operation", operation_var)):
            value = var.get()
            if value:
                entry[key] = value

        entry.update(
            (key, value) for key, value in vars(record).items()
            if key not in _RESERVED_ATTRS and key not in entry
        )

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class PerformanceLogger:
    """
    Times a block and logs how it ended.

    DEBUG on entry, INFO with ``duration_ms`` on success, ERROR with the
    exception type on failure. ``operation`` is bound to ``operation_var``
    for the duration of the block.

    Example:
        async with PerformanceLogger("find_by_id", logger=logger, secondary_id=key):
            rows = await engine.find_by_id(key)
    """

    def __init__(self, operation: str, logger: logging.Logger, **context: Any):
        self.operation = operation
        self.logger = logger
        self.context = context
        self.duration_ms: float | None = None
        self._started: float | None = None
        self._token = None

    async def __aenter__(self):
        self._started = time.perf_counter()
        self._token = operation_var.set(self.operation)
        self.logger.debug(
            f"{self.operation} started",
            extra={"event": "operation_start", **self.context},
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.perf_counter() - self._started) * 1000
        fields = {"duration_ms": round(self.duration_ms, 2), **self.context}

        try:
            if exc_type is None:
                self.logger.info(
                    f"{self.operation} completed in {fields['duration_ms']} ms",
                    extra={"event": "operation_completed", **fields},
                )
            else:
                self.logger.error(
                    f"{self.operation} failed after {fields['duration_ms']} ms: {exc_val}",
                    extra={
                        "event": "operation_failed",
                        "error_type": exc_type.__name__,
                        "error": str(exc_val),
                        **fields,
                    },
                )
        finally:
            operation_var.reset(self._token)


def new_request_id(incoming: str | None = None) -> str:
    """Bind ``incoming`` (or a fresh id) as the current request id and return it."""
    request_id = incoming or uuid.uuid4().hex
    request_id_var.set(request_id)
    return request_id


def setup_production_logging(level: str = "INFO", format: str = "json") -> None:
    """
    Replace the root handlers with a single stderr handler.

    Args:
        level: Root log level name
        format: "json" for StructuredFormatter, anything else for plain text
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter() if format.lower() == "json" else logging.Formatter(TEXT_FORMAT))
    root.addHandler(handler)

    # The driver logs every reconnection attempt at INFO
    logging.getLogger("cassandra").setLevel(max(root.level, logging.WARNING))
