"""Structured logging utilities.

Every record is one JSON object per line. Context travels through
``extra={"ctx_<name>": value}`` and lands in the output as ``<name>``.
Fields bound at setup time (service name, contract type) are added to every
record so lines from several sync workers can share one log stream.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Literal, Mapping, Optional

CTX_PREFIX = "ctx_"

LogFormat = Literal["json", "text"]


def _context(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key[len(CTX_PREFIX):]: value
        for key, value in record.__dict__.items()
        if key.startswith(CTX_PREFIX)
    }


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self, static_fields: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__()
        self._static = dict(static_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        log_record: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **self._static,
        }
        log_record.update(_context(record))

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_record, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for local runs: ``message key=value ...``."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _context(record)
        if context:
            line += " " + " ".join(f"{k}={v}" for k, v in context.items())
        return line


def setup_logging(
    level: str = "INFO",
    fmt: LogFormat = "json",
    static_fields: Optional[Mapping[str, Any]] = None,
) -> None:
    """Configure application logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR).
        fmt: "json" for log collectors, "text" for a terminal.
        static_fields: Fields added to every JSON record.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(
        JsonFormatter(static_fields) if fmt == "json" else TextFormatter()
    )
    root_logger.addHandler(console_handler)

    # RPC polling is chatty at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
