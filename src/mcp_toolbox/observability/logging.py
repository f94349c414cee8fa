"""Logging setup for MCP Toolbox.

Log records are stamped with the group, instance, account and operation that
were active in the emitting asyncio task, so interleaved output from
concurrent deployments, health checks and credential refreshes can be told
apart. Production emits one JSON object per line.
"""

import json
import logging
import sys
from contextvars import ContextVar
from typing import Dict, Optional, TextIO

_CONTEXT: Dict[str, ContextVar] = {
    name: ContextVar(name, default=None)
    for name in ("group_id", "instance_name", "account_id", "operation")
}

# Labels used in the development format.
_SHORT_NAMES = {"group_id": "group", "instance_name": "instance", "account_id": "account", "operation": "op"}

_QUIET_LOGGERS = ("aiodocker", "aiohttp", "httpx", "httpcore")


def set_log_context(
    group_id: Optional[str] = None,
    instance_name: Optional[str] = None,
    operation: Optional[str] = None,
    account_id: Optional[str] = None,
):
    """Set contextual logging fields for the current async context.

    Each ``asyncio`` task copies the context at creation, so values set
    inside a per-instance deployment task do not leak into its siblings.
    """
    values = {
        "group_id": group_id,
        "instance_name": instance_name,
        "operation": operation,
        "account_id": account_id,
    }
    for name, value in values.items():
        if value is not None:
            _CONTEXT[name].set(value)


def clear_log_context():
    for var in _CONTEXT.values():
        var.set(None)


class LogContextFilter(logging.Filter):
    """Copies the active context onto each record as it is emitted."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, var in _CONTEXT.items():
            setattr(record, name, var.get())
        return True


def _record_context(record: logging.LogRecord) -> Dict[str, str]:
    # Records that bypassed the filter fall back to the current context
    fields = {}
    for name, var in _CONTEXT.items():
        value = record.__dict__[name] if name in record.__dict__ else var.get()
        if value:
            fields[name] = value
    return fields


class StructuredFormatter(logging.Formatter):
    """JSON formatter for production."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_record_context(record),
        }
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


class HumanReadableFormatter(logging.Formatter):
    """Single-line formatter for development, context appended in brackets."""

    def format(self, record: logging.LogRecord) -> str:
        msg = f"[{self.formatTime(record, self.datefmt)}] {record.levelname:8s} {record.name}: {record.getMessage()}"

        context = _record_context(record)
        if context:
            msg += " [" + ", ".join(f"{_SHORT_NAMES[k]}={v}" for k, v in context.items()) + "]"

        if record.exc_info and record.exc_info[1]:
            msg += "\n" + self.formatException(record.exc_info)
        return msg


def configure_logging(environment: str = "development", log_level: str = "INFO", stream: Optional[TextIO] = None):
    """Configure root logging for the toolbox.

    Args:
        environment: "production" for JSON output, anything else for human-readable.
        log_level: Logging level string (DEBUG, INFO, WARNING, ERROR).
        stream: Output stream, stdout if None
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.addFilter(LogContextFilter())
    if environment == "production":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(HumanReadableFormatter(datefmt="%Y-%m-%d %H:%M:%S"))
    root_logger.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
