"""
Sliding-window failure counting.

An address is suspicious when it has at least `threshold` failed logins whose
timestamps fall inside the trailing window ending at `now`. Successful logins
are ignored entirely: they do not reset or offset earlier failures.
"""

from collections import Counter
from datetime import datetime, timedelta
from typing import Iterable, Set

from .log_parser import LoginAttempt


def _in_window(attempt: LoginAttempt, now: datetime, window: timedelta) -> bool:
    """True if now - attempt.timestamp <= window."""
    return now - attempt.timestamp <= window


def build_failure_tally(
    attempts: Iterable[LoginAttempt],
    now: datetime,
    window_seconds: float,
) -> Counter:
    """Count failed attempts per address inside the window."""
    window = timedelta(seconds=window_seconds)
    tally: Counter = Counter()
    for attempt in attempts:
        if attempt.failed and _in_window(attempt, now, window):
            tally[attempt.address] += 1
    return tally


def find_suspicious_ips(
    attempts: Iterable[LoginAttempt],
    now: datetime,
    window_seconds: float,
    threshold: int,
) -> Set[str]:
    """
    Return the addresses whose in-window failure count is >= threshold.

    Raises ValueError for a non-positive window or threshold; those are
    caller bugs, not something to round up to 1.
    """
    if window_seconds <= 0:
        raise ValueError(f"window_seconds must be positive, got {window_seconds}")
    if threshold <= 0:
        raise ValueError(f"threshold must be positive, got {threshold}")

    tally = build_failure_tally(attempts, now, window_seconds)
    return {ip for ip, count in tally.items() if count >= threshold}
