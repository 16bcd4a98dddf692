"""
Structured JSON logging for cluster operations.

Every record is emitted as one JSON object per line. Keyword arguments passed to
the logging methods become top-level fields, so per-instance and per-cluster
context (``cluster=``, ``instance=``, ``phase=``) can be filtered with ``jq``.
"""

import json
import logging
import sys
from typing import Any, Dict
from datetime import datetime, timezone


class StructuredLogger:
    """
    A logger that outputs logs in a structured JSON format.
    """

    def __init__(self, name: str, level: int = logging.INFO):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(level)

        # Clear existing handlers to avoid duplicate logs
        if self.logger.handlers:
            self.logger.handlers.clear()

        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(self.JsonFormatter())
        self.logger.addHandler(handler)
        self.logger.propagate = False

    class JsonFormatter(logging.Formatter):
        # LogRecord attributes that are never copied as extra fields
        STANDARD_ATTRS = {
            "name",
            "msg",
            "args",
            "created",
            "filename",
            "funcName",
            "levelname",
            "levelno",
            "lineno",
            "module",
            "msecs",
            "message",
            "pathname",
            "process",
            "processName",
            "relativeCreated",
            "thread",
            "threadName",
            "exc_info",
            "exc_text",
            "stack_info",
            "taskName",
        }

        def format(self, record: logging.LogRecord) -> str:
            log_entry: Dict[str, Any] = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
            }

            if record.exc_info:
                log_entry["exception"] = self.formatException(record.exc_info)

            for key, value in record.__dict__.items():
                if key not in self.STANDARD_ATTRS:
                    log_entry[key] = value

            # default=str keeps Path, IPv4Address and enum values loggable
            return json.dumps(log_entry, default=str)

    def set_level(self, level: int) -> None:
        self.logger.setLevel(level)

    def bind(self, **fields: Any) -> "BoundLogger":
        """Return a logger that adds ``fields`` to every record."""
        return BoundLogger(self, fields)

    def info(self, message: str, **kwargs: Any) -> None:
        self.logger.info(message, extra=kwargs)

    def error(self, message: str, exc_info: bool = False, **kwargs: Any) -> None:
        self.logger.error(message, exc_info=exc_info, extra=kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self.logger.warning(message, extra=kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        self.logger.debug(message, extra=kwargs)

    def critical(self, message: str, exc_info: bool = True, **kwargs: Any) -> None:
        self.logger.critical(message, exc_info=exc_info, extra=kwargs)


class BoundLogger:
    """A StructuredLogger view carrying fixed context fields."""

    def __init__(self, parent: StructuredLogger, fields: Dict[str, Any]) -> None:
        self._parent = parent
        self.fields = dict(fields)

    def bind(self, **fields: Any) -> "BoundLogger":
        return BoundLogger(self._parent, {**self.fields, **fields})

    def _merge(self, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        return {**self.fields, **kwargs}

    def info(self, message: str, **kwargs: Any) -> None:
        self._parent.info(message, **self._merge(kwargs))

    def error(self, message: str, exc_info: bool = False, **kwargs: Any) -> None:
        self._parent.error(message, exc_info=exc_info, **self._merge(kwargs))

    def warning(self, message: str, **kwargs: Any) -> None:
        self._parent.warning(message, **self._merge(kwargs))

    def debug(self, message: str, **kwargs: Any) -> None:
        self._parent.debug(message, **self._merge(kwargs))


# Global logger instance
logger = StructuredLogger("kvm_cluster")
