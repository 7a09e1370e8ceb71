"""
Structured logging for the royalty engine.

Production writes one JSON object per record; development writes a short
colored line. Records pick up the current request or monitor context, and
both formats scrub messages and extras before writing them:

- API keys, bearer tokens, webhook secrets and signatures become [REDACTED]
- Wallet addresses are shortened to 0x1234...abcd
"""

import json
import logging
import os
import re
import sys
import threading
from datetime import datetime, timezone
from typing import Any

REDACTED = "[REDACTED]"

_SECRET_ASSIGNMENT = re.compile(
    r"(api[_-]?key|token|secret|signature|password)([\"']?\s*[:=]\s*[\"']?)([^\s\"',}{]+)",
    re.IGNORECASE,
)
_BEARER = re.compile(r"(Bearer\s+)\S+", re.IGNORECASE)
_ADDRESS = re.compile(r"\b(0x[a-fA-F0-9]{4})[a-fA-F0-9]{32}([a-fA-F0-9]{4})\b")

SECRET_KEYS = frozenset(
    {
        "api_key",
        "apikey",
        "x_api_key",
        "authorization",
        "token",
        "secret",
        "webhook_secret",
        "password",
        "x_royalty_signature",
    }
)

_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys() | {"message", "taskName", "context"}
)

_MAX_DEPTH = 10


def scrub(value: Any, _depth: int = 0) -> Any:
    """Redact credentials and shorten addresses in strings, mappings and lists."""
    if _depth > _MAX_DEPTH:
        return "[MAX_DEPTH_EXCEEDED]"
    if isinstance(value, str):
        value = _SECRET_ASSIGNMENT.sub(rf"\1\2{REDACTED}", value)
        value = _BEARER.sub(rf"\1{REDACTED}", value)
        return _ADDRESS.sub(r"\1...\2", value)
    if isinstance(value, dict):
        return {
            k: REDACTED if str(k).lower().replace("-", "_") in SECRET_KEYS else scrub(v, _depth + 1)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [scrub(item, _depth + 1) for item in value]
    return value


# ============================================================
# Context
# ============================================================

_context = threading.local()


def set_request_context(**values) -> None:
    current = getattr(_context, "values", {})
    _context.values = {**current, **values}


def clear_request_context() -> None:
    _context.values = {}


def get_request_context() -> dict[str, Any]:
    return dict(getattr(_context, "values", {}))


class LoggingContext:
    """
    Add context to every record logged inside the block.

    Usage:
        with LoggingContext(monitor="derivative"):
            logger.info("Tick started")
    """

    def __init__(self, **values):
        self.values = values
        self._saved: dict[str, Any] = {}

    def __enter__(self):
        self._saved = get_request_context()
        set_request_context(**self.values)
        return self

    def __exit__(self, _exc_type, _exc_val, _exc_tb):
        _context.values = self._saved
        return False


class ContextFilter(logging.Filter):
    """Copy the current context onto each record as ``record.context``."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.context = get_request_context()
        return True


def _extras(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS}


# ============================================================
# Formatters
# ============================================================


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record:

    {"timestamp": "...", "level": "INFO", "logger": "claims",
     "message": "Claim completed for 0x1234...abcd",
     "context": {"request_id": "..."}, ...extras}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": scrub(record.getMessage()),
        }
        context = getattr(record, "context", None)
        if context:
            entry["context"] = scrub(context)
        if record.levelno >= logging.WARNING:
            entry["location"] = f"{record.pathname}:{record.lineno}"
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update(scrub(_extras(record)))
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Colored single-line output for development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        line = f"{color}{stamp} {record.levelname[0]} [{record.name}]{self.RESET} {scrub(record.getMessage())}"

        context = getattr(record, "context", None)
        if context:
            line += " (" + " ".join(f"{k}={v}" for k, v in scrub(context).items()) + ")"
        extras = scrub(_extras(record))
        if extras:
            line += " [" + ", ".join(f"{k}={v}" for k, v in extras.items()) + "]"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(level: str | None = None, json_output: bool | None = None) -> None:
    """
    Install the root handler.

    LOG_LEVEL picks the level (default INFO). LOG_FORMAT=json|console picks
    the format; without it production logs JSON and everything else logs to
    the console format.
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        log_format = os.getenv("LOG_FORMAT", "").lower()
        if log_format:
            json_output = log_format == "json"
        else:
            json_output = os.getenv("ROYALTY_ENVIRONMENT", "development") == "production"

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if json_output else ConsoleFormatter())
    handler.addFilter(ContextFilter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level, logging.INFO))

    for noisy in ("urllib3", "werkzeug"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
