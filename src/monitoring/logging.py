"""
Structured logging for SealedGallery.

Two output formats share one redaction pass: JSON lines for aggregation
(LOG_FORMAT=json) and a coloured single-line format for development.
Content keys, identity secrets, signatures and keystore material must
never reach a sink, so both formatters scrub the message, the request
context and every extra field before rendering.
"""

import json
import logging
import os
import re
import sys
import threading
from datetime import UTC, datetime
from typing import Any

# ============================================================
# Redaction
# ============================================================

_ASSIGNED_SECRET = re.compile(
    r"(api[_-]?key|token|secret|passphrase|password)([\"']?\s*[:=]\s*[\"']?)([^\s\"',}{]+)",
    re.IGNORECASE,
)
_BEARER = re.compile(r"(Bearer\s+)(\S+)", re.IGNORECASE)
_PEM_PRIVATE_KEY = re.compile(
    r"-----BEGIN[^-]+PRIVATE KEY-----.*?-----END[^-]+PRIVATE KEY-----", re.DOTALL
)
# content keys, raw identity secrets and sealed handles are all 32-byte hex
_HEX_32 = re.compile(r"\b(0x)?[a-fA-F0-9]{64}\b")

_STRING_RULES = (
    (_ASSIGNED_SECRET, r"\1\2[REDACTED]"),
    (_BEARER, r"\1[REDACTED]"),
    (_PEM_PRIVATE_KEY, "[REDACTED_PRIVATE_KEY]"),
    (_HEX_32, "[REDACTED_HEX]"),
)

SECRET_FIELDS = frozenset({
    "identity_secret",
    "raw_secret",
    "secret",
    "content_key",
    "content_key_hex",
    "key",
    "private_key",
    "sealing_key",
    "signature",
    "passphrase",
    "password",
    "api_key",
    "token",
    "authorization",
    "ciphertext",
})

_MAX_NESTING = 10

_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message"}


def redact_string(text: str) -> str:
    """Scrub secret-looking substrings from free text."""
    if not isinstance(text, str):
        return text
    for pattern, replacement in _STRING_RULES:
        text = pattern.sub(replacement, text)
    return text


def redact_sensitive_data(data: Any, _depth: int = 0) -> Any:
    """
    Return a copy of `data` safe to log.

    Values under a SECRET_FIELDS key are replaced outright, strings are
    scrubbed with redact_string, and raw bytes are reduced to their length.
    """
    if _depth > _MAX_NESTING:
        return "[MAX_DEPTH_EXCEEDED]"
    if isinstance(data, dict):
        return {
            key: "[REDACTED]"
            if str(key).lower().replace("-", "_") in SECRET_FIELDS
            else redact_sensitive_data(value, _depth + 1)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact_sensitive_data(value, _depth + 1) for value in data]
    if isinstance(data, str):
        return redact_string(data)
    if isinstance(data, (bytes, bytearray)):
        return f"[{len(data)} bytes]"
    return data


# ============================================================
# Per-thread request context
# ============================================================

_local = threading.local()


def get_request_context() -> dict[str, Any]:
    return getattr(_local, "context", {})


def set_request_context(**values) -> None:
    """Merge values into the context attached to every log line on this thread."""
    _local.context = {**get_request_context(), **values}


def clear_request_context() -> None:
    _local.context = {}


class LoggingContext:
    """
    Attach fields to every log line emitted inside the block.

    Usage:
        with LoggingContext(item_id=7, principal=address):
            logger.info("Releasing key")
    """

    def __init__(self, **values):
        self.values = values
        self._saved: dict[str, Any] = {}

    def __enter__(self):
        self._saved = dict(get_request_context())
        set_request_context(**self.values)
        return self

    def __exit__(self, _exc_type, _exc_val, _exc_tb):
        _local.context = self._saved
        return False


# ============================================================
# Formatters
# ============================================================

class RedactingFormatter(logging.Formatter):
    """Base formatter that hands subclasses already-scrubbed parts of a record."""

    def scrubbed(self, record: logging.LogRecord) -> tuple[str, dict[str, Any], dict[str, Any]]:
        """Return (message, context, extras) with secrets removed."""
        extras = {k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS}
        return (
            redact_string(record.getMessage()),
            redact_sensitive_data(get_request_context()),
            redact_sensitive_data(extras),
        )


class JSONFormatter(RedactingFormatter):
    """
    One JSON object per line.

    Warnings and above carry a "location" block; extra= fields are merged
    into the top level.
    """

    def format(self, record: logging.LogRecord) -> str:
        message, context, extras = self.scrubbed(record)
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": message,
        }
        if record.levelno >= logging.WARNING:
            entry["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        if context:
            entry["context"] = context
        entry.update(extras)
        return json.dumps(entry, default=str)


class ConsoleFormatter(RedactingFormatter):
    """Compact coloured lines for a terminal."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        message, context, extras = self.scrubbed(record)
        color = self.LEVEL_COLORS.get(record.levelname, "")
        stamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]

        parts = [f"{color}{stamp} {record.levelname[0]} [{record.name}]{self.RESET} {message}"]
        if context:
            pairs = " ".join(f"{k}={v}" for k, v in context.items())
            parts.append(f"{color}({pairs}){self.RESET}")
        if extras:
            parts.append("[" + ", ".join(f"{k}={v}" for k, v in extras.items()) + "]")

        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(
    level: str | None = None,
    json_output: bool | None = None,
    log_file: str | None = None,
) -> None:
    """
    Install handlers on the root logger, replacing any already there.

    Args:
        level: Log level name; LOG_LEVEL or INFO when omitted
        json_output: JSON to stderr; LOG_FORMAT=json when omitted
        log_file: Also append JSON lines to this file
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = os.getenv("LOG_FORMAT", "").lower() == "json"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))
    root.handlers.clear()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(JSONFormatter() if json_output else ConsoleFormatter())
    root.addHandler(stderr_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        root.addHandler(file_handler)

    for noisy in ("urllib3", "werkzeug"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
