"""
Structured JSON logging for XRDP Guard.

Each log line is a single JSON object so the output can be shipped to a
SIEM as-is. The ban audit trail is written here too, as plain text lines.
"""

import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, TextIO

# None means sys.stdout at write time. Export mode moves logs to stderr so
# stdout carries records only.
LOG_STREAM: Optional[TextIO] = None
DEBUG = False

# Timestamp format shared by log lines, exported records and the ban log.
GUARD_TIME_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def configure(stream: Optional[TextIO] = None, debug: bool = False) -> None:
    """Set the log destination (None: stdout) and whether debug lines are written."""
    global LOG_STREAM, DEBUG
    LOG_STREAM = stream
    DEBUG = debug


def format_guard_time(when: datetime) -> str:
    """datetime -> "2024-01-05 10:15:00.123"."""
    return when.strftime(GUARD_TIME_FORMAT)[:-3]


def log_event(level: str, message: str, **kwargs) -> None:
    """
    Write a single log event as one line of JSON.

    Args:
        level: DEBUG, INFO, WARN, ERROR.
        message: Human-readable description.
        **kwargs: Additional context (ip, path, error, ...).
    """
    event = {
        "timestamp": format_guard_time(datetime.now()),
        "level": level,
        "message": message,
        **kwargs,
    }
    line = json.dumps(event, default=str) + "\n"
    stream = LOG_STREAM or sys.stdout
    stream.write(line)
    stream.flush()


def log_debug(message: str, **kwargs) -> None:
    """Log at DEBUG level; dropped unless debug output is enabled."""
    if DEBUG:
        log_event("DEBUG", message, **kwargs)


def log_info(message: str, **kwargs) -> None:
    """Convenience: log at INFO level."""
    log_event("INFO", message, **kwargs)


def log_warn(message: str, **kwargs) -> None:
    """Convenience: log at WARN level."""
    log_event("WARN", message, **kwargs)


def log_error(message: str, **kwargs) -> None:
    """Convenience: log at ERROR level."""
    log_event("ERROR", message, **kwargs)


def append_ban_record(path: Path, when: datetime, ips: Iterable[str]) -> None:
    """
    Append one ban audit entry: "<time>\\t[<ip>, <ip>, ...]\\n".

    The entry is built in full and written with a single call on a file
    opened in append mode, so the log never holds half an entry.
    Raises OSError; the caller decides how loud that is.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    line = f"{format_guard_time(when)}\t[{', '.join(ips)}]\n"
    with open(path, "a", encoding="utf-8") as f:
        f.write(line)
