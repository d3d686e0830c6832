"""
XRDP Guard - ban addresses that keep failing xrdp logins.

This package provides:
- log_parser: Correlate xrdp connection and login lines into login attempts
- detector: Count failures per address in a trailing time window
- firewall: Ban/unban addresses (firewalld, iptables, or no-op)
- whitelist: Trusted addresses (never banned)
- guard: One enforcement cycle and the repeating loop
- logger: JSON logging and the ban audit log
- config: Immutable run configuration
- cli: Command-line front end
"""

__version__ = "0.2.0"
