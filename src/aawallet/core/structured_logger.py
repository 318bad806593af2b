"""
aawallet - Structured Logging

Module loggers (``logging.getLogger(__name__)``) attach structured fields via
``extra={"event": ..., ...}``. This module turns those records into JSON or
plain text and carries a correlation id (the user operation hash while the
entry point processes an operation) across nested calls.
"""

import json
import logging
import os
import sys
import time
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from . import config

# Correlation id of the operation being processed, if any
correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Attributes every LogRecord carries; anything else came in through ``extra``
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys()
) | {"message", "asctime", "correlation_id"}

_SENSITIVE_KEYS = ("private_key", "password", "secret", "api_key", "signature")


def _sanitize(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Redact values whose key names look sensitive."""
    sanitized: Dict[str, Any] = {}
    for key, value in fields.items():
        if any(sensitive in key.lower() for sensitive in _SENSITIVE_KEYS):
            sanitized[key] = "REDACTED"
        elif isinstance(value, dict):
            sanitized[key] = _sanitize(value)
        else:
            sanitized[key] = value
    return sanitized


def extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Structured fields passed to the logging call through ``extra``."""
    return _sanitize(
        {key: value for key, value in vars(record).items() if key not in _RESERVED_ATTRS}
    )


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record.

    The object carries the record's location, the active correlation id
    (the user operation hash inside ``handleOps``) and every structured field
    passed through ``extra``, with sensitive keys redacted.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        active_id = correlation_id.get()
        if active_id:
            entry["correlation_id"] = active_id
        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "traceback": self.formatException(record.exc_info),
            }
        entry.update(extra_fields(record))
        return json.dumps(entry, default=str)


class CorrelationIDFilter(logging.Filter):
    """Copy the active correlation id onto the record for text output."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id.get() or "NO-ID"
        return True


class LogContext:
    """
    Tag every record emitted inside the block with one correlation id.

    The entry point opens a context per user operation, passing the 32-byte
    operation hash, so validation and execution logs of one operation share
    the ``0x``-prefixed hash as their id. Anything else (a bundle, a test)
    may pass its own string, or nothing for a random ``local-`` id.

    Usage:
        with LogContext(op_hash):
            logger.info("Validated user operation")
    """

    def __init__(self, operation: Union[bytes, str, None] = None):
        if isinstance(operation, bytes):
            self.correlation_id = "0x" + operation.hex()
        else:
            self.correlation_id = operation or f"local-{os.urandom(8).hex()}"

    def __enter__(self) -> "LogContext":
        self.token = correlation_id.set(self.correlation_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        correlation_id.reset(self.token)


def setup_logging(
    level: Optional[str] = None,
    json_output: Optional[bool] = None,
    stream: Any = None,
) -> logging.Logger:
    """
    Attach a single handler to the ``aawallet`` package logger.

    Args:
        level: Minimum log level, defaults to ``AAWALLET_LOG_LEVEL``
        json_output: JSON lines instead of text, defaults to ``AAWALLET_LOG_JSON``
        stream: Output stream, defaults to stderr

    Returns:
        The configured package logger
    """
    level = (level or config.LOG_LEVEL).upper()
    json_output = config.LOG_JSON if json_output is None else json_output

    package_logger = logging.getLogger("aawallet")
    package_logger.setLevel(getattr(logging, level))

    # Prevent duplicate handlers
    for handler in list(package_logger.handlers):
        if getattr(handler, "_aawallet_handler", False):
            package_logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler._aawallet_handler = True  # type: ignore[attr-defined]
    handler.addFilter(CorrelationIDFilter())
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        text_formatter = logging.Formatter(
            "[%(asctime)s UTC] %(levelname)-8s [%(correlation_id)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        text_formatter.converter = time.gmtime
        handler.setFormatter(text_formatter)
    package_logger.addHandler(handler)
    return package_logger
