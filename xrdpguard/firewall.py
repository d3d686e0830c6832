"""
Firewall backends: turn ban decisions into firewall rules.

This module is ISOLATED so that:
- All command execution lives in one place for security review.
- Every address is validated as an IP literal before it reaches a command,
  and commands are run as argument lists, never through a shell.
- New backends plug in through the BACKENDS registry.

Every operation returns True/False. Expected failures (tool missing,
permission denied, non-zero exit) are logged and reported as False, never
raised, so one bad address cannot stop the rest of a cycle.
"""

import ipaddress
import subprocess
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Type

from . import logger
from .config import ConfigError

IPV4 = "ipv4"
IPV6 = "ipv6"
FAMILIES = (IPV4, IPV6)


def normalize_address(ip: str) -> str:
    """
    Validate an address literal and return its canonical form.

    IPv4-mapped IPv6 ("::ffff:10.0.0.5") collapses to plain IPv4, since
    IPv4 and IPv6 rules are matched separately. Raises ValueError for
    anything that is not an IP literal.
    """
    addr = ipaddress.ip_address(ip.strip())
    if addr.version == 6 and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped
    return str(addr)


def address_family(ip: str) -> str:
    """IPV4 for dotted-quad literals, IPV6 for everything else."""
    try:
        return IPV4 if ipaddress.ip_address(ip).version == 4 else IPV6
    except ValueError:
        return IPV6


class FirewallBackend(ABC):
    """Ban/unban/check per address family, plus a commit step."""

    name = "base"

    def __init__(self, timeout: Optional[float] = None):
        # None: wait for the tool however long it takes.
        self.timeout = timeout

    @abstractmethod
    def ban(self, ip: str, family: str) -> bool:
        """Drop traffic from ip. Banning an already banned address succeeds."""

    @abstractmethod
    def unban(self, ip: str, family: str) -> bool:
        """Lift the ban on ip."""

    @abstractmethod
    def is_banned(self, ip: str, family: str) -> bool:
        """True if a rule for ip is in place."""

    @abstractmethod
    def apply(self) -> bool:
        """Commit staged changes. Backends with live rules return True."""

    def _checked(self, ip: str, family: str) -> Optional[str]:
        """Return the normalized literal, or None if it must not reach a command."""
        if family not in FAMILIES:
            logger.log_warn("Unknown address family", ip=ip, family=family, backend=self.name)
            return None
        try:
            addr = normalize_address(ip)
        except ValueError as e:
            logger.log_warn("Refusing invalid address", ip=ip, backend=self.name, error=str(e))
            return None
        if address_family(addr) != family:
            logger.log_warn("Address does not match family", ip=addr, family=family, backend=self.name)
            return None
        return addr

    def _run(self, cmd: List[str]) -> Optional[subprocess.CompletedProcess]:
        """
        Run cmd and return the finished process, or None if it could not run.

        Non-zero exits are returned to the caller: for queries they are an
        answer, not an error.
        """
        logger.log_debug("Executing firewall command", cmd=cmd)
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError as e:
            logger.log_warn("Firewall tool not installed", cmd=cmd[0], backend=self.name, error=str(e))
            return None
        except subprocess.TimeoutExpired as e:
            logger.log_warn("Firewall command timed out", cmd=cmd, backend=self.name, error=str(e))
            return None
        except OSError as e:
            logger.log_warn("Firewall command could not run", cmd=cmd, backend=self.name, error=str(e))
            return None
        logger.log_debug(
            "Firewall command finished",
            cmd=cmd,
            exit_code=proc.returncode,
            stdout=proc.stdout.strip(),
            stderr=proc.stderr.strip(),
        )
        return proc

    def _run_ok(self, cmd: List[str], action: str, ip: Optional[str] = None) -> bool:
        """Run a mutating command; a non-zero exit is a logged failure."""
        proc = self._run(cmd)
        if proc is None:
            return False
        if proc.returncode != 0:
            logger.log_warn(
                f"Firewall {action} failed",
                ip=ip,
                backend=self.name,
                exit_code=proc.returncode,
                error=proc.stderr.strip(),
            )
            return False
        return True


class FirewalldBackend(FirewallBackend):
    """
    firewalld via firewall-cmd rich rules.

    Rules go to the permanent configuration and take effect on apply()
    (firewall-cmd --reload).
    """

    name = "firewalld"

    @staticmethod
    def rich_rule(ip: str, family: str) -> str:
        return f'rule family="{family}" source address="{ip}" drop'

    def _rule_cmd(self, option: str, ip: str, family: str) -> List[str]:
        return ["firewall-cmd", "--permanent", f"{option}={self.rich_rule(ip, family)}"]

    def ban(self, ip: str, family: str) -> bool:
        """Add the drop rule unless it is already there."""
        addr = self._checked(ip, family)
        if addr is None:
            return False
        if self._rule_exists(addr, family):
            logger.log_debug("Rule already present", ip=addr, backend=self.name)
            return True
        return self._run_ok(self._rule_cmd("--add-rich-rule", addr, family), "ban", addr)

    def unban(self, ip: str, family: str) -> bool:
        """Remove the drop rule; an absent rule is nothing to do."""
        addr = self._checked(ip, family)
        if addr is None:
            return False
        if not self._rule_exists(addr, family):
            logger.log_debug("No rule to remove", ip=addr, backend=self.name)
            return True
        return self._run_ok(self._rule_cmd("--remove-rich-rule", addr, family), "unban", addr)

    def is_banned(self, ip: str, family: str) -> bool:
        """True if the permanent configuration holds the drop rule."""
        addr = self._checked(ip, family)
        return addr is not None and self._rule_exists(addr, family)

    def _rule_exists(self, addr: str, family: str) -> bool:
        # --query-rich-rule exits 0 for "yes", 1 for "no".
        proc = self._run(self._rule_cmd("--query-rich-rule", addr, family))
        return proc is not None and proc.returncode == 0

    def apply(self) -> bool:
        """Reload firewalld so permanent rules become live."""
        return self._run_ok(["firewall-cmd", "--reload"], "reload")


class IptablesBackend(FirewallBackend):
    """
    iptables / ip6tables DROP rules at the head of INPUT.

    Rules are live as soon as they are inserted, so apply() has nothing to do.
    iptables happily stacks identical rules, so ban() checks before inserting
    and unban() deletes until no copy is left.
    """

    name = "iptables"

    @staticmethod
    def _tool(family: str) -> str:
        return "iptables" if family == IPV4 else "ip6tables"

    def _rule_cmd(self, action: List[str], ip: str, family: str) -> List[str]:
        return [self._tool(family), *action, "-s", ip, "-j", "DROP"]

    def _rule_exists(self, addr: str, family: str) -> bool:
        # -C exits 0 when the rule exists.
        proc = self._run(self._rule_cmd(["-C", "INPUT"], addr, family))
        return proc is not None and proc.returncode == 0

    def ban(self, ip: str, family: str) -> bool:
        """Insert a DROP rule for ip unless one is already in INPUT."""
        addr = self._checked(ip, family)
        if addr is None:
            return False
        if self._rule_exists(addr, family):
            logger.log_debug("Rule already present", ip=addr, backend=self.name)
            return True
        return self._run_ok(self._rule_cmd(["-I", "INPUT", "1"], addr, family), "ban", addr)

    def unban(self, ip: str, family: str) -> bool:
        """Delete every DROP rule for ip, including duplicates added by hand."""
        addr = self._checked(ip, family)
        if addr is None:
            return False
        while self._rule_exists(addr, family):
            if not self._run_ok(self._rule_cmd(["-D", "INPUT"], addr, family), "unban", addr):
                return False
        return True

    def is_banned(self, ip: str, family: str) -> bool:
        """True if INPUT holds a DROP rule for ip."""
        addr = self._checked(ip, family)
        return addr is not None and self._rule_exists(addr, family)

    def apply(self) -> bool:
        """Nothing to commit; iptables rules are already live."""
        return True


class NoFirewall(FirewallBackend):
    """Touches nothing. Every ban succeeds and nothing is ever banned."""

    name = "none"

    def ban(self, ip: str, family: str) -> bool:
        """Log the ban that would happen."""
        logger.log_debug("[NO-FIREWALL] Would ban", ip=ip, family=family)
        return True

    def unban(self, ip: str, family: str) -> bool:
        """Log the unban that would happen."""
        logger.log_debug("[NO-FIREWALL] Would unban", ip=ip, family=family)
        return True

    def is_banned(self, ip: str, family: str) -> bool:
        """Always False: nothing is ever banned here."""
        return False

    def apply(self) -> bool:
        """Always succeeds."""
        return True


BACKENDS: Dict[str, Type[FirewallBackend]] = {
    FirewalldBackend.name: FirewalldBackend,
    IptablesBackend.name: IptablesBackend,
    NoFirewall.name: NoFirewall,
}


def get_backend(name: str, timeout: Optional[float] = None) -> FirewallBackend:
    """Instantiate the backend registered under name; ConfigError if unknown."""
    try:
        backend_cls = BACKENDS[name]
    except KeyError:
        raise ConfigError(
            f"Unknown firewall backend {name!r} (known: {', '.join(sorted(BACKENDS))})"
        ) from None
    logger.log_debug("Firewall backend selected", backend=name)
    return backend_cls(timeout=timeout)
