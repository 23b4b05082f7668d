"""Logging setup for Turnforge.

Every record carries the id of the turn it was emitted under (or "-"), so a
log file shared by several projects can still be read one turn at a time.

Usage:
    from turnforge.logging_config import setup_logging, turn_context

    setup_logging(level="INFO", format="json")
    with turn_context("3f2a9c1b7d4e"):
        logger.info("Applying batch")
"""

from __future__ import annotations

import contextvars
import json
import logging
import logging.handlers
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from turnforge.paths import paths

LogFormat = Literal["text", "json"]

NO_TURN = "-"

# Context variable so concurrent controllers on different threads keep their own turn id
_current_turn: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "current_turn", default=None
)


def current_turn() -> str | None:
    """Turn id of the enclosing turn_context(), if any."""
    return _current_turn.get()


@contextmanager
def turn_context(turn_id: str) -> Iterator[None]:
    """Tag every record logged inside the block with turn_id."""
    token = _current_turn.set(turn_id)
    try:
        yield
    finally:
        _current_turn.reset(token)


class TurnIdFilter(logging.Filter):
    """Stamps `turn_id` on each record passing through a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.turn_id = _current_turn.get() or NO_TURN
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line.

    {"timestamp": "...", "level": "INFO", "logger": "turnforge.pipeline.session",
     "turn_id": "3f2a9c1b7d4e", "message": "..."}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        turn_id = getattr(record, "turn_id", NO_TURN)
        if turn_id != NO_TURN:
            entry["turn_id"] = turn_id
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, ensure_ascii=False)


TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s turn=%(turn_id)s: %(message)s"


def setup_logging(
    level: str = "INFO",
    format: LogFormat = "text",
    log_file: Path | None = None,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
) -> None:
    """Send logs to stderr and to a rotating file under the XDG cache directory."""
    formatter: logging.Formatter = (
        JsonFormatter() if format == "json" else logging.Formatter(TEXT_FORMAT)
    )
    turn_filter = TurnIdFilter()

    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(turn_filter)
    root_logger.addHandler(console_handler)

    log_file = log_file or paths.log_path
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    except OSError as e:
        root_logger.warning("Could not create log file at %s: %s", log_file, e)
    else:
        file_handler.setFormatter(formatter)
        file_handler.addFilter(turn_filter)
        root_logger.addHandler(file_handler)

    # The device flow polls every few seconds
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
