"""
Whitelist: addresses that must never be banned.

One literal per line, exact string match. A whitelisted address still shows
up as suspicious in logs and exports; it is only spared from the firewall.
"""

from pathlib import Path
from typing import Set

from . import logger


def load_whitelist(path: Path) -> Set[str]:
    """
    Load whitelist entries from path. Blank lines are skipped.

    A missing file is an empty whitelist. An unreadable file is logged and
    also treated as empty: banning too much beats not guarding at all.
    """
    path = Path(path)
    if not path.exists():
        logger.log_debug("No whitelist file", path=str(path))
        return set()
    entries = set()
    try:
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    entries.add(line)
    except (OSError, UnicodeDecodeError) as e:
        logger.log_warn("Failed to load whitelist", path=str(path), error=str(e))
        return set()
    logger.log_debug("Whitelist loaded", path=str(path), entries=sorted(entries))
    return entries


def is_whitelisted(ip: str, whitelist: Set[str]) -> bool:
    return ip in whitelist
