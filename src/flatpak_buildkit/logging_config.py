"""Logging setup for the CLI.

Build output streams to stdout through the OutputSink; log records go to
stderr so the two never interleave in a pipe.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Optional

import click

# Record attributes set through `extra=` by the runner and process handle
CONTEXT_FIELDS = ("phase", "pid")

LEVEL_COLORS = {
    "DEBUG": "blue",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red",
}

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _context(record: logging.LogRecord) -> dict:
    return {
        name: getattr(record, name)
        for name in CONTEXT_FIELDS
        if getattr(record, name, None) is not None
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with the phase and pid when the record has them."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


class TextFormatter(logging.Formatter):
    """Plain lines; level names are colored when writing to a terminal."""

    def __init__(self, color: bool = False):
        super().__init__(TEXT_FORMAT)
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        if self.color and record.levelname in LEVEL_COLORS:
            tag = f"[{record.levelname}]"
            line = line.replace(tag, click.style(tag, fg=LEVEL_COLORS[record.levelname]), 1)
        return line


def configure_logging(level_override: Optional[str] = None) -> None:
    """
    Install a single stderr handler on the root logger.

    Args:
        level_override: The --log-level option; wins over LOG_LEVEL.

    Environment variables:
        LOG_LEVEL: DEBUG, INFO, WARNING or ERROR. Unknown names mean INFO.
        LOG_FORMAT: "json" for JSON lines, anything else for text.
    """
    level_name = (level_override or os.getenv("LOG_LEVEL", "INFO")).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    if os.getenv("LOG_FORMAT", "text").lower() == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(TextFormatter(color=sys.stderr.isatty()))
    root_logger.addHandler(handler)
