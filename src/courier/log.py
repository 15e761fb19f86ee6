"""Logging for Courier.

Every log line about a task or message carries the id of the record it
concerns. :class:`LogContext` binds ids (and any other key-value pairs)
for the duration of a block; both formatters put the lifecycle ids
(``task_id``, ``message_id``, ``delivery_id``) first and the remaining
bindings after the message::

    with LogContext(task_id="t-1", action="send_email"):
        logger.info("Processing task")

    # text: 12:00:01 I worker [task=t-1] ▸ Processing task  action=send_email
    # json: {"taskId": "t-1", "message": "Processing task", "context": {"action": ...}}

:func:`configure_logging` installs one handler on the ``courier`` logger;
the CLI and the API call it with ``Settings.log_level`` and
``Settings.log_format``.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any, TextIO

_ROOT = "courier"

# Context key -> (text label, JSON field), in display order.
LIFECYCLE_KEYS: dict[str, tuple[str, str]] = {
    "task_id": ("task", "taskId"),
    "message_id": ("msg", "messageId"),
    "delivery_id": ("delivery", "deliveryId"),
}

_context: ContextVar[dict[str, Any] | None] = ContextVar("courier_log_context", default=None)


def current_context() -> dict[str, Any]:
    """Bindings active in the current task or thread."""
    return dict(_context.get() or {})


def _split_context() -> tuple[dict[str, Any], dict[str, Any]]:
    ctx = current_context()
    ids = {k: ctx.pop(k) for k in LIFECYCLE_KEYS if k in ctx}
    return ids, ctx


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------

_LEVELS: dict[int, tuple[str, str]] = {
    logging.DEBUG: ("D", "\033[2m"),
    logging.INFO: ("I", "\033[36m"),
    logging.WARNING: ("W", "\033[33m"),
    logging.ERROR: ("E", "\033[31m"),
    logging.CRITICAL: ("C", "\033[1;31m"),
}
_RESET = "\033[0m"
_DIM = "\033[2m"


class TextFormatter(logging.Formatter):
    """One line per record: time, level, component, record ids, message, bindings.

    Args:
        color: Emit ANSI colors. Off by default so piped output stays plain.
    """

    def __init__(self, *, color: bool = False) -> None:
        super().__init__()
        self._color = color

    def _paint(self, text: str, code: str) -> str:
        return f"{code}{text}{_RESET}" if self._color and code else text

    def format(self, record: logging.LogRecord) -> str:
        char, code = _LEVELS.get(record.levelno, ("?", ""))
        component = record.name.removeprefix(f"{_ROOT}.")
        ids, extra = _split_context()

        parts = [
            self._paint(self.formatTime(record, "%H:%M:%S"), _DIM),
            self._paint(f"{char} {component}", code),
        ]
        if ids:
            labels = " ".join(f"{LIFECYCLE_KEYS[k][0]}={v}" for k, v in ids.items())
            parts.append(f"[{labels}]")
        line = " ".join(parts) + f" ▸ {record.getMessage()}"
        if extra:
            line += "  " + " ".join(f"{k}={v}" for k, v in extra.items())

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            line += "\n" + self._paint(record.exc_text, code)
        return line


class JsonFormatter(logging.Formatter):
    """One JSON object per line; record ids are top-level fields."""

    def format(self, record: logging.LogRecord) -> str:
        ids, extra = _split_context()
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
        }
        for key, value in ids.items():
            entry[LIFECYCLE_KEYS[key][1]] = value
        entry["message"] = record.getMessage()
        if extra:
            entry["context"] = extra
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------

_lock = threading.Lock()
_configured = False


def configure_logging(
    level: str | int = "WARNING",
    fmt: str = "text",
    *,
    force: bool = False,
    stream: TextIO | None = None,
) -> None:
    """Attach a single handler to the ``courier`` logger.

    Later calls are ignored unless *force* is set. Unknown level names
    fall back to ``WARNING``. Text output is colored only when *stream*
    (default stderr) is a terminal.
    """
    global _configured

    with _lock:
        if _configured and not force:
            return
        out = stream if stream is not None else sys.stderr
        handler = logging.StreamHandler(out)
        if fmt == "json":
            handler.setFormatter(JsonFormatter())
        else:
            handler.setFormatter(TextFormatter(color=out.isatty()))

        root = logging.getLogger(_ROOT)
        root.handlers.clear()
        root.addHandler(handler)
        if isinstance(level, str):
            level = logging.getLevelNamesMapping().get(level.upper(), logging.WARNING)
        root.setLevel(level)
        _configured = True


def reset_logging() -> None:
    """Drop the handler installed by :func:`configure_logging`. Tests only."""
    global _configured
    with _lock:
        _configured = False
        root = logging.getLogger(_ROOT)
        root.handlers.clear()
        root.setLevel(logging.NOTSET)


class LogContext:
    """Bind key-value pairs to every log record emitted inside the block.

    Bindings live in a ``ContextVar``, so each asyncio task sees its own;
    nested blocks merge with (and override) the enclosing bindings.
    """

    def __init__(self, **bindings: Any) -> None:
        self._bindings = bindings
        self._token: Any = None

    def __enter__(self) -> LogContext:
        self._token = _context.set({**current_context(), **self._bindings})
        return self

    def __exit__(self, *_: object) -> None:
        if self._token is not None:
            _context.reset(self._token)
            self._token = None
