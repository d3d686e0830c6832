"""
xrdp log correlator.

xrdp writes the "connection received" line and the login outcome on separate
lines, so a login attempt can only be judged by pairing the two. We walk the
log once, keep at most one pending connection, and turn every connection into
exactly one LoginAttempt:

    [20240105-10:15:00] [INFO ] connection received from 10.0.0.5 port 51234
    [20240105-10:15:03] [INFO ] login failed for user: admin
    [20240105-10:16:00] [INFO ] connection received from ::ffff:10.0.0.7 port 51240
    [20240105-10:16:02] [INFO ] login successful for user: bob

A connection that never reaches an outcome line (superseded by the next
connection, or still open at end of input) counts as a failure.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from . import logger
from .logger import format_guard_time


class Outcome(Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAIL"


@dataclass(frozen=True)
class LoginAttempt:
    """One reconstructed login try."""

    timestamp: datetime
    address: str  # literal as logged, e.g. "::ffff:10.0.0.5"
    outcome: Outcome

    @property
    def failed(self) -> bool:
        return self.outcome is Outcome.FAILURE


class LogFormatError(ValueError):
    """The log no longer looks like the xrdp format we attribute logins from."""

    def __init__(self, message: str, line_number: int = 0, line: str = ""):
        super().__init__(f"line {line_number}: {message}: {line!r}" if line_number else message)
        self.line_number = line_number
        self.line = line


# ---------------------------------------------------------------------------
# LINE RULES
# ---------------------------------------------------------------------------
# xrdp timestamps: "[20240105-10:15:00] ..." -> chars 1..17
XRDP_TIME_FORMAT = "%Y%m%d-%H:%M:%S"
XRDP_TIME_SLICE = slice(1, 18)


@dataclass(frozen=True)
class LineRule:
    """A named line class, recognised by plain substring markers."""

    name: str
    markers: Tuple[str, ...]

    def matches(self, line: str) -> bool:
        return any(marker in line for marker in self.markers)


RESTART = LineRule("restart", ("starting xrdp",))
CONNECTION = LineRule("connection", ("connection received from",))
LOGIN_FAILURE = LineRule("login_failure", ("login failed", "xrdp_iso_incoming failed"))
LOGIN_SUCCESS = LineRule("login_success", ("login succ",))

# Checked in order; the first match wins.
RULES = (RESTART, CONNECTION, LOGIN_FAILURE, LOGIN_SUCCESS)


def classify_line(line: str) -> Optional[LineRule]:
    """Return the rule a line belongs to, or None for lines we do not track."""
    for rule in RULES:
        if rule.matches(line):
            return rule
    return None


def parse_xrdp_time(text: str) -> datetime:
    """Parse "20240105-10:15:00". Raises ValueError on format drift."""
    return datetime.strptime(text, XRDP_TIME_FORMAT)


def extract_connection(line: str, line_number: int = 0) -> Tuple[datetime, str]:
    """
    Pull (timestamp, address) out of a "connection received from" line.

    Raises LogFormatError if either part cannot be found; guessing here
    would attribute logins to the wrong address or time.
    """
    try:
        timestamp = parse_xrdp_time(line[XRDP_TIME_SLICE])
    except ValueError as e:
        raise LogFormatError(f"unparseable timestamp ({e})", line_number, line) from e

    start = line.find("from ")
    end = line.find(" port", start) if start != -1 else -1
    if start == -1 or end == -1:
        raise LogFormatError("no 'from <address> port' section", line_number, line)
    address = line[start + len("from "):end].strip()
    if not address:
        raise LogFormatError("empty source address", line_number, line)
    return timestamp, address


class LogCorrelator:
    """
    Pairs connection lines with outcome lines.

    States: scanning (no pending connection) and scanning-with-pending.
    Feed lines in order, then call finish() once to flush.
    """

    def __init__(self) -> None:
        self.attempts: List[LoginAttempt] = []
        self.pending: Optional[Tuple[datetime, str]] = None
        self.restarts = 0

    def _resolve(self, outcome: Outcome) -> None:
        timestamp, address = self.pending
        self.attempts.append(LoginAttempt(timestamp, address, outcome))
        self.pending = None

    def feed(self, line: str, line_number: int = 0) -> None:
        rule = classify_line(line)
        if rule is None:
            return
        if rule is RESTART:
            # Everything before a restart belongs to an older xrdp instance.
            self.attempts.clear()
            self.pending = None
            self.restarts += 1
        elif rule is CONNECTION:
            if self.pending is not None:
                self._resolve(Outcome.FAILURE)
            self.pending = extract_connection(line, line_number)
        elif self.pending is None:
            # Outcome without a connection to attribute it to.
            return
        elif rule is LOGIN_FAILURE:
            self._resolve(Outcome.FAILURE)
        elif rule is LOGIN_SUCCESS:
            self._resolve(Outcome.SUCCESS)

    def finish(self) -> List[LoginAttempt]:
        if self.pending is not None:
            self._resolve(Outcome.FAILURE)
        return self.attempts


def correlate(lines: Iterable[str]) -> List[LoginAttempt]:
    """Turn raw xrdp log lines into an ordered list of LoginAttempt."""
    correlator = LogCorrelator()
    for line_number, line in enumerate(lines, start=1):
        correlator.feed(line.rstrip("\r\n"), line_number)
    attempts = correlator.finish()
    if correlator.restarts:
        logger.log_debug("Restart markers seen; earlier records discarded", restarts=correlator.restarts)
    return attempts


def parse_log(path: Path) -> List[LoginAttempt]:
    """
    Read the whole xrdp log at path and correlate it.

    OSError (missing/unreadable log) and LogFormatError propagate: both are
    fatal for the cycle. The file is closed on every exit path.
    """
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        return correlate(f)


def format_attempt(attempt: LoginAttempt) -> str:
    """Export form: "2024-01-05 10:15:00.000\\t10.0.0.5\\tFAIL"."""
    return f"{format_guard_time(attempt.timestamp)}\t{attempt.address}\t{attempt.outcome.value}"
