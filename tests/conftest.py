from datetime import datetime, timedelta

import pytest

from xrdpguard import logger
from xrdpguard.config import Config
from xrdpguard.firewall import FirewallBackend

NOW = datetime(2024, 1, 5, 10, 30, 0)


def xrdp_line(ts: datetime, message: str, level: str = "INFO ") -> str:
    return f"[{ts:%Y%m%d-%H:%M:%S}] [{level}] {message}"


def failed_login_lines(ip: str, start: datetime, count: int, step: int = 5) -> list:
    """count connection/failure pairs from ip, step seconds apart."""
    lines = []
    for i in range(count):
        ts = start + timedelta(seconds=i * step)
        lines.append(xrdp_line(ts, f"connection received from {ip} port {40000 + i}"))
        lines.append(xrdp_line(ts + timedelta(seconds=1), "login failed for user: admin"))
    return lines


class FakeBackend(FirewallBackend):
    """Records every call; remembers bans like a real firewall would."""

    name = "fake"

    def __init__(self, fail_ban=(), apply_ok=True):
        super().__init__()
        self.calls = []
        self.banned = set()
        self.fail_ban = set(fail_ban)
        self.apply_ok = apply_ok

    def ban(self, ip, family):
        self.calls.append(("ban", ip, family))
        if ip in self.fail_ban:
            return False
        self.banned.add((ip, family))
        return True

    def unban(self, ip, family):
        self.calls.append(("unban", ip, family))
        self.banned.discard((ip, family))
        return True

    def is_banned(self, ip, family):
        self.calls.append(("is_banned", ip, family))
        return (ip, family) in self.banned

    def apply(self):
        self.calls.append(("apply",))
        return self.apply_ok

    def mutations(self):
        return [c for c in self.calls if c[0] in ("ban", "unban", "apply")]


@pytest.fixture(autouse=True)
def reset_logger():
    logger.configure()
    yield
    logger.configure()


@pytest.fixture
def write_log(tmp_path):
    def _write(lines, name="xrdp.log"):
        path = tmp_path / name
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path
    return _write


@pytest.fixture
def make_config(tmp_path):
    def _make(**overrides):
        values = {
            "log_path": tmp_path / "xrdp.log",
            "whitelist_path": tmp_path / "whitelist.txt",
            "ban_log_path": tmp_path / "state" / "ban.log",
            "period_seconds": 60,
            "max_fails": 3,
            "firewall": "none",
        }
        values.update(overrides)
        return Config.from_mapping(values)
    return _make
