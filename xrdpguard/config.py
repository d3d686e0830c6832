"""
Central configuration for XRDP Guard.

Defaults live at the top of the module. A run builds one immutable Config
from these defaults, an optional YAML file and command-line overrides, then
hands it explicitly to the correlator, detector and guard loop.
"""

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

# ---------------------------------------------------------------------------
# DETECTION THRESHOLDS
# ---------------------------------------------------------------------------
# How many failed logins before an address is considered suspicious?
DEFAULT_MAX_FAILS = 3

# Trailing window (seconds) in which failures are counted. 10 minutes.
DEFAULT_PERIOD_SECONDS = 600

# ---------------------------------------------------------------------------
# PATHS
# ---------------------------------------------------------------------------
DEFAULT_LOG_PATH = "/var/log/xrdp.log"
DEFAULT_STATE_DIR = Path("xrdpguard")
DEFAULT_WHITELIST_PATH = DEFAULT_STATE_DIR / "whitelist.txt"
DEFAULT_BAN_LOG_PATH = DEFAULT_STATE_DIR / "ban.log"

# ---------------------------------------------------------------------------
# RESPONSE
# ---------------------------------------------------------------------------
DEFAULT_FIREWALL = "firewalld"

# Loop intervals below this are treated as "run once".
MIN_LOOP_SECONDS = 5


class ConfigError(ValueError):
    """Raised for configuration values the guard cannot run with."""


# Value kind per Config field; YAML gives us whatever the user typed.
PATH_FIELDS = ("log_path", "whitelist_path", "ban_log_path")
INT_FIELDS = ("max_fails",)
FLOAT_FIELDS = ("period_seconds", "loop_seconds", "command_timeout")
BOOL_FIELDS = ("debug", "dry_run", "export", "no_ban_log")
STR_FIELDS = ("firewall",)


def _coerce(key: str, value: Any) -> Any:
    """Check one config value against its field's kind; ConfigError on mismatch."""
    # bool is an int subclass; "true" must not pass as a number.
    is_number = isinstance(value, (int, float)) and not isinstance(value, bool)
    if key in PATH_FIELDS:
        if isinstance(value, (str, Path)):
            return Path(value)
        expected = "a path"
    elif key in INT_FIELDS:
        if is_number and isinstance(value, int):
            return value
        expected = "an integer"
    elif key in FLOAT_FIELDS:
        if is_number:
            return float(value)
        expected = "a number"
    elif key in BOOL_FIELDS:
        if isinstance(value, bool):
            return value
        expected = "true or false"
    elif key in STR_FIELDS:
        if isinstance(value, str):
            return value
        expected = "a string"
    else:
        raise ConfigError(f"Unknown configuration key: {key}")
    raise ConfigError(f"{key} must be {expected}, got {value!r}")


@dataclass(frozen=True)
class Config:
    log_path: Path = Path(DEFAULT_LOG_PATH)
    whitelist_path: Path = DEFAULT_WHITELIST_PATH
    ban_log_path: Path = DEFAULT_BAN_LOG_PATH
    period_seconds: float = DEFAULT_PERIOD_SECONDS
    max_fails: int = DEFAULT_MAX_FAILS
    firewall: str = DEFAULT_FIREWALL
    loop_seconds: Optional[float] = None
    command_timeout: Optional[float] = None
    debug: bool = False
    dry_run: bool = False
    export: bool = False
    no_ban_log: bool = False

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Config":
        """Build a Config from a plain mapping (YAML document, CLI overrides)."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls().merged(data)

    def merged(self, overrides: Mapping[str, Any]) -> "Config":
        """Return a copy with non-None overrides applied, each checked for type."""
        values = {k: _coerce(k, v) for k, v in overrides.items() if v is not None}
        return replace(self, **values)

    @property
    def looping(self) -> bool:
        return self.loop_seconds is not None and self.loop_seconds >= MIN_LOOP_SECONDS

    def validate(self) -> "Config":
        """Reject values that would make detection meaningless."""
        # Local import: firewall imports ConfigError from this module.
        from .firewall import BACKENDS

        if self.period_seconds <= 0:
            raise ConfigError(f"period must be positive, got {self.period_seconds}")
        if self.max_fails <= 0:
            raise ConfigError(f"maxfail must be positive, got {self.max_fails}")
        if self.firewall not in BACKENDS:
            raise ConfigError(
                f"Unknown firewall backend {self.firewall!r} "
                f"(known: {', '.join(sorted(BACKENDS))})"
            )
        if self.command_timeout is not None and self.command_timeout <= 0:
            raise ConfigError(f"timeout must be positive, got {self.command_timeout}")
        return self


def load_config(path: Optional[str] = None) -> Config:
    """
    Load a Config from a YAML file. No path means built-in defaults.

    The file holds a flat mapping whose keys are Config field names, e.g.

        log_path: /var/log/xrdp.log
        period_seconds: 600
        max_fails: 3
    """
    if path is None:
        return Config()
    p = Path(path)
    try:
        with p.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Could not read config file {p}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {p}: {e}") from e
    if data is None:
        return Config()
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {p} must contain a mapping")
    return Config.from_mapping(data)
