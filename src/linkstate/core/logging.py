"""
Linkstate logging.

Log records go to stderr so stdout stays free for the delta stream that
``linkstate`` prints. Two renderings:

- text (default): ``HH:MM:SS LEVEL  logger  message  [s1 state=connected]``,
  colored when stderr is a TTY
- json: one object per line, for log aggregation

Env vars: LINKSTATE_LOG_LEVEL, LINKSTATE_LOG_COLOR, LINKSTATE_LOG_FORMAT.

Session context travels as logging extras:
    logger.info("Session ready", extra={"session_id": sid, "state": "connected"})
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone

LEVEL_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[1;31m",
}
DIM = "\033[2m"
RESET = "\033[0m"

# Extras recognised by both formatters, in display order
CONTEXT_FIELDS = ("session_id", "event", "state", "channel", "command", "duration_ms")

# Chatty below WARNING: request lines, frame dumps
QUIET_LOGGERS = ("httpx", "httpcore", "websockets")


def _context(record: logging.LogRecord) -> dict:
    return {
        name: getattr(record, name)
        for name in CONTEXT_FIELDS
        if getattr(record, name, None) is not None
    }


def _short_name(name: str) -> str:
    # linkstate.sessions.registry -> sessions.registry
    return name.removeprefix("linkstate.")


class ColorFormatter(logging.Formatter):
    """Single-line text output; session context appended as a bracketed tag."""

    def __init__(self, use_color: bool = False):
        super().__init__()
        self.use_color = use_color

    def _paint(self, text: str, code: str) -> str:
        return f"{code}{text}{RESET}" if self.use_color else text

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = self._paint(f"{record.levelname:<7}", LEVEL_COLORS.get(record.levelname, ""))
        line = f"{self._paint(stamp, DIM)} {level} {_short_name(record.name):<22} {record.getMessage()}"

        ctx = _context(record)
        if ctx:
            parts = []
            sid = ctx.pop("session_id", None)
            if sid is not None:
                parts.append(str(sid))
            parts.extend(f"{k}={v}" for k, v in ctx.items())
            line += "  " + self._paint(f"[{' '.join(parts)}]", DIM)

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class StructuredFormatter(logging.Formatter):
    """JSON lines with the context extras lifted to top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update(_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _color_enabled(stream) -> bool:
    setting = os.getenv("LINKSTATE_LOG_COLOR", "auto").lower()
    if setting in ("true", "false"):
        return setting == "true"
    return hasattr(stream, "isatty") and stream.isatty()


def setup_logging(level: str | None = None, fmt: str | None = None, stream=None) -> logging.Handler:
    """Install a single root handler. Arguments override the env vars.

    Returns the handler so callers (tests, embedding apps) can detach it.
    """
    level_name = (level or os.getenv("LINKSTATE_LOG_LEVEL", "INFO")).upper()
    numeric = getattr(logging, level_name, logging.INFO)
    fmt = (fmt or os.getenv("LINKSTATE_LOG_FORMAT", "text")).lower()
    stream = stream or sys.stderr

    handler = logging.StreamHandler(stream)
    if fmt == "json":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(ColorFormatter(use_color=_color_enabled(stream)))

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(numeric)
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric, logging.WARNING))

    logging.getLogger("linkstate").debug("Logging ready (level=%s, format=%s)", level_name, fmt)
    return handler
