"""Logging setup for reserveproof: stderr plus optional rotating file, text or JSON, with secret redaction."""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import Any, Mapping, Optional


@dataclass(frozen=True)
class LoggingOptions:
    level: str = "INFO"
    format: str = "text"  # text | json
    file: Optional[str] = None
    redact: bool = True


_SECRET_KEY_FRAGMENTS = (
    "api_key",
    "apikey",
    "authorization",
    "keypair",
    "password",
    "private_key",
    "secret",
    "seed",
    "signature",
)

_RE_KV = re.compile(
    r"(?P<key>x-api-key|api[_-]?key|keypair|signature|secret|password|authorization)\s*[:=]\s*(?P<value>[^\s,;]+)",
    flags=re.IGNORECASE,
)


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "time": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context", None)
        if context is not None:
            payload["context"] = context
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _looks_secret_key(key: str) -> bool:
    lowered = key.lower().replace("-", "_")
    return any(fragment in lowered for fragment in _SECRET_KEY_FRAGMENTS)


def _redact_str(value: str) -> str:
    return _RE_KV.sub(lambda m: f"{m.group('key')}=[REDACTED]", value)


def _redact_context(context: Mapping[str, Any]) -> dict[str, Any]:
    """Flat ``extra={"context": {...}}`` mapping with secrets masked.

    Values under secret-looking keys and raw bytes (key material) are masked;
    strings are scrubbed like messages.
    """
    redacted: dict[str, Any] = {}
    for key, value in context.items():
        if _looks_secret_key(str(key)) or isinstance(value, (bytes, bytearray)):
            redacted[key] = "[REDACTED]"
        elif isinstance(value, str):
            redacted[key] = _redact_str(value)
        else:
            redacted[key] = value
    return redacted


class RedactionFilter(logging.Filter):
    """Masks API keys, operator keypairs and signatures before a record is emitted."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = _redact_str(record.msg)

        context = getattr(record, "context", None)
        if isinstance(context, Mapping):
            record.context = _redact_context(context)

        return True


def _normalize_level(level: str) -> str:
    return level.strip().upper()


def _normalize_format(fmt: str) -> str:
    lowered = fmt.strip().lower()
    if lowered in {"text", "json"}:
        return lowered
    raise ValueError(f"Invalid log format: {fmt}")


def load_logging_options_from_env() -> LoggingOptions:
    """Load logging options from environment.

    Env vars:
        - RESERVEPROOF_LOG_LEVEL
        - RESERVEPROOF_LOG_FORMAT
        - RESERVEPROOF_LOG_FILE
        - RESERVEPROOF_LOG_REDACT ("0" disables redaction)
    """
    level = os.getenv("RESERVEPROOF_LOG_LEVEL", "INFO")
    fmt = os.getenv("RESERVEPROOF_LOG_FORMAT", "text")
    file = os.getenv("RESERVEPROOF_LOG_FILE")
    redact_env = os.getenv("RESERVEPROOF_LOG_REDACT", "1")
    redact = redact_env not in {"0", "false", "FALSE"}
    return LoggingOptions(level=level, format=fmt, file=file, redact=redact)


def _build_formatter(fmt: str, *, with_time: bool) -> logging.Formatter:
    if _normalize_format(fmt) == "json":
        return JSONFormatter()
    if with_time:
        return logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    return logging.Formatter("%(levelname)s %(name)s: %(message)s")


def configure_logging(options: LoggingOptions) -> None:
    """Configure the ``reserveproof`` logger hierarchy.

    Logs go to stderr and, when ``options.file`` is set, to a rotating file.
    The redaction filter is attached to every handler unless disabled.
    """
    logger = logging.getLogger("reserveproof")
    logger.setLevel(getattr(logging, _normalize_level(options.level), logging.INFO))

    logger.handlers.clear()
    logger.propagate = False

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_build_formatter(options.format, with_time=False))
    if options.redact:
        handler.addFilter(RedactionFilter())
    logger.addHandler(handler)

    if options.file:
        file_handler = RotatingFileHandler(
            options.file,
            maxBytes=10 * 1024 * 1024,
            backupCount=3,
        )
        file_handler.setFormatter(_build_formatter(options.format, with_time=True))
        if options.redact:
            file_handler.addFilter(RedactionFilter())
        logger.addHandler(file_handler)
