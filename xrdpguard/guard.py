"""
Enforcement: one scan cycle, and the optional repeating loop around it.

Cycle flow:
1. Load whitelist (best effort)
2. Correlate the xrdp log into login attempts
3. Export mode: print the attempts and stop
4. Count failures in the trailing window -> suspicious addresses
5. Dry-run mode: report the verdict and stop
6. Ban each suspicious address that is neither whitelisted nor already banned
7. Apply once, then append one ban audit entry

Log and config problems propagate out of run_cycle (fatal). Whitelist, audit
and firewall problems are logged and the cycle carries on (degraded).
"""

import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Set, TextIO

from . import detector
from . import log_parser
from . import logger
from . import whitelist
from .config import Config
from .firewall import FirewallBackend, address_family, normalize_address


@dataclass
class CycleResult:
    """What one cycle saw and changed."""

    attempts: int = 0
    suspicious: Set[str] = field(default_factory=set)
    whitelisted: List[str] = field(default_factory=list)
    already_banned: List[str] = field(default_factory=list)
    banned: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    applied: Optional[bool] = None  # None: apply was not needed
    audited: bool = False
    exported: bool = False


def _export(attempts: Iterable[log_parser.LoginAttempt], stream: TextIO) -> int:
    count = 0
    for attempt in attempts:
        stream.write(log_parser.format_attempt(attempt) + "\n")
        count += 1
    stream.flush()
    return count


def _enforce(
    cfg: Config,
    backend: FirewallBackend,
    suspicious: Set[str],
    whitelist_ips: Set[str],
    result: CycleResult,
) -> None:
    """Ban step, one address at a time. Fills result in place."""
    seen = set()
    for ip in sorted(suspicious):
        if whitelist.is_whitelisted(ip, whitelist_ips):
            logger.log_info("Skipping whitelisted IP (no action)", ip=ip)
            result.whitelisted.append(ip)
            continue
        try:
            addr = normalize_address(ip)
        except ValueError as e:
            logger.log_warn("Skipping address that is not an IP literal", ip=ip, error=str(e))
            result.failed.append(ip)
            continue
        # "::ffff:10.0.0.5" is spared by a "10.0.0.5" entry too.
        if whitelist.is_whitelisted(addr, whitelist_ips):
            logger.log_info("Skipping whitelisted IP (no action)", ip=ip)
            result.whitelisted.append(ip)
            continue
        if addr in seen:
            continue
        seen.add(addr)

        family = address_family(addr)
        if backend.is_banned(addr, family):
            logger.log_debug("Already banned", ip=addr, family=family)
            result.already_banned.append(addr)
            continue

        logger.log_debug("Banning", ip=addr, family=family)
        if backend.ban(addr, family):
            logger.log_info("Banned address", ip=addr, family=family)
            result.banned.append(addr)
        else:
            logger.log_warn("Failed to ban address", ip=addr, family=family)
            result.failed.append(addr)

    if not result.banned:
        return

    result.applied = backend.apply()
    if not result.applied:
        logger.log_warn("Failed to apply firewall rule changes", backend=backend.name)
        return
    logger.log_info("Banned IPs", count=len(result.banned), ips=result.banned)

    if cfg.no_ban_log:
        return
    try:
        logger.append_ban_record(cfg.ban_log_path, datetime.now(), result.banned)
        result.audited = True
        logger.log_debug("Ban log written", path=str(cfg.ban_log_path))
    except OSError as e:
        logger.log_warn("Failed to write ban log", path=str(cfg.ban_log_path), error=str(e))


def run_cycle(
    cfg: Config,
    backend: FirewallBackend,
    now: Optional[datetime] = None,
    export_stream: Optional[TextIO] = None,
) -> CycleResult:
    """Run one scan-detect-enforce cycle and report what happened."""
    result = CycleResult()

    whitelist_ips = whitelist.load_whitelist(cfg.whitelist_path)

    logger.log_debug("Reading xrdp log", path=str(cfg.log_path))
    attempts = log_parser.parse_log(cfg.log_path)
    result.attempts = len(attempts)
    logger.log_info("Parsed log file", path=str(cfg.log_path), records=len(attempts))

    if cfg.export:
        count = _export(attempts, export_stream or sys.stdout)
        logger.log_info("Exported login records", records=count)
        result.exported = True
        return result

    now = now or datetime.now()
    logger.log_debug("Checking suspicious IPs", window_seconds=cfg.period_seconds, until=now)
    result.suspicious = detector.find_suspicious_ips(
        attempts, now, cfg.period_seconds, cfg.max_fails
    )
    logger.log_info(
        "Suspicious IPs",
        count=len(result.suspicious),
        ips=sorted(result.suspicious),
        threshold=cfg.max_fails,
        window_seconds=cfg.period_seconds,
    )

    if cfg.dry_run:
        logger.log_info("[DRY-RUN] Dry run completed (firewall not modified)")
        return result

    if result.suspicious:
        _enforce(cfg, backend, result.suspicious, whitelist_ips, result)
    return result


def unban_addresses(backend: FirewallBackend, addresses: Iterable[str]) -> bool:
    """
    Lift bans by hand, then apply once.

    Returns True only if every address was unbanned and the apply succeeded.
    """
    unbanned = []
    ok = True
    for ip in addresses:
        try:
            addr = normalize_address(ip)
        except ValueError as e:
            logger.log_warn("Skipping address that is not an IP literal", ip=ip, error=str(e))
            ok = False
            continue
        family = address_family(addr)
        if backend.unban(addr, family):
            logger.log_info("Unbanned address", ip=addr, family=family)
            unbanned.append(addr)
        else:
            logger.log_warn("Failed to unban address", ip=addr, family=family)
            ok = False
    if unbanned and not backend.apply():
        logger.log_warn("Failed to apply firewall rule changes", backend=backend.name)
        return False
    return ok


def run_loop(
    cfg: Config,
    backend: FirewallBackend,
    stop_event: Optional[threading.Event] = None,
    clock: Callable[[], float] = time.monotonic,
) -> int:
    """
    Run cycles until stopped; return how many ran.

    Without a loop interval (or in export mode) a single cycle runs. Otherwise
    the next cycle starts loop_seconds after the previous one started, or
    right away if the cycle overran. Setting stop_event ends the loop between
    cycles; a cycle in progress always finishes.
    """
    stop_event = stop_event or threading.Event()
    cycles = 0
    while not stop_event.is_set():
        started = clock()
        run_cycle(cfg, backend)
        cycles += 1
        if not cfg.looping or cfg.export:
            break
        delay = max(0.0, cfg.loop_seconds - (clock() - started))
        logger.log_debug("Sleeping until next cycle", seconds=round(delay, 3))
        if stop_event.wait(delay):
            break
    if stop_event.is_set():
        logger.log_info("Stop requested; no further cycles", cycles=cycles)
    return cycles
