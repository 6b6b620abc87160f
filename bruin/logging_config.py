"""Logging setup for bruin.

Logs go to stderr so stdout stays free for the console summary. Level and
format come from BRUIN_LOG_LEVEL / BRUIN_LOG_FORMAT, or from the CLI flags
via configure_logging(). Records logged with ``extra={"collection": ...,
"environment": ..., "request": ...}`` carry that run context in both formats.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any, TextIO

import orjson

LOG_LEVEL_ENV = "BRUIN_LOG_LEVEL"
LOG_FORMAT_ENV = "BRUIN_LOG_FORMAT"  # "json" | "text" (default)
ROOT_LOGGER = "bruin"
CONTEXT_FIELDS = ("collection", "environment", "request")

_TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s%(run_context)s: %(message)s"


def get_logger(name: str) -> logging.Logger:
    """Return ``bruin.<name>``; the bruin root logger is configured from the environment on first use."""
    logger = logging.getLogger(ROOT_LOGGER if name == ROOT_LOGGER else f"{ROOT_LOGGER}.{name}")
    if not logging.getLogger(ROOT_LOGGER).handlers:
        configure_logging()
    return logger


def configure_logging(level: str | None = None, fmt: str | None = None, stream: TextIO | None = None) -> None:
    """(Re)configure the bruin root logger.

    Args:
        level: Level name; falls back to BRUIN_LOG_LEVEL, then WARNING
        fmt: "json" or "text"; falls back to BRUIN_LOG_FORMAT, then text
        stream: Output stream, stderr by default
    """
    root = logging.getLogger(ROOT_LOGGER)
    level_name = (level or os.environ.get(LOG_LEVEL_ENV) or "WARNING").upper()
    root.setLevel(getattr(logging, level_name, logging.WARNING))

    handler = logging.StreamHandler(stream or sys.stderr)
    if (fmt or os.environ.get(LOG_FORMAT_ENV) or "text").lower() == "json":
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(_TextFormatter(_TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    for old in list(root.handlers):
        root.removeHandler(old)
    root.addHandler(handler)


def _context(record: logging.LogRecord) -> dict[str, Any]:
    return {f: getattr(record, f) for f in CONTEXT_FIELDS if getattr(record, f, None)}


class _TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ctx = _context(record)
        record.run_context = " [" + " ".join(f"{k}={v}" for k, v in ctx.items()) + "]" if ctx else ""
        return super().format(record)


class _JsonFormatter(logging.Formatter):
    """One JSON object per line, for log shippers in CI."""

    def format(self, record: logging.LogRecord) -> str:
        obj: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt or "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context(record),
        }
        if record.exc_info:
            obj["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(obj).decode("utf-8")
