import argparse
import signal
import sys
import threading
from typing import List, Optional

from . import __version__
from . import guard
from . import logger
from .config import ConfigError, load_config
from .firewall import BACKENDS, get_backend
from .log_parser import LogFormatError

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    """Command-line flags; every config flag defaults to None so the YAML value wins."""
    parser = argparse.ArgumentParser(
        prog="xrdpguard",
        description="Ban addresses that keep failing xrdp logins.",
    )
    parser.add_argument("--config", default=None,
                        help="YAML config file; command-line flags override it.")
    parser.add_argument("--log", dest="log_path", default=None,
                        help="Path of the xrdp log (default: /var/log/xrdp.log).")
    parser.add_argument("--whitelist", dest="whitelist_path", default=None,
                        help="Whitelist file, one address per line (default: xrdpguard/whitelist.txt).")
    parser.add_argument("--ban-log", dest="ban_log_path", default=None,
                        help="Ban audit log (default: xrdpguard/ban.log).")
    parser.add_argument("--period", dest="period_seconds", type=float, default=None,
                        help="Time window in seconds for counting failures (default: 600).")
    parser.add_argument("--maxfail", dest="max_fails", type=int, default=None,
                        help="Failures within the window that make an address suspicious (default: 3).")
    parser.add_argument("--firewall", default=None, choices=sorted(BACKENDS),
                        help="Firewall backend (default: firewalld).")
    parser.add_argument("--loop", dest="loop_seconds", type=float, default=None,
                        help="Repeat every N seconds; below 5 runs once (default: off).")
    parser.add_argument("--timeout", dest="command_timeout", type=float, default=None,
                        help="Timeout in seconds for each firewall command (default: none).")
    parser.add_argument("--debug", action="store_true", default=None,
                        help="Enable debug output.")
    parser.add_argument("--dryrun", dest="dry_run", action="store_true", default=None,
                        help="Only report suspicious addresses; do not touch the firewall.")
    parser.add_argument("--export", action="store_true", default=None,
                        help="Print the extracted login records to stdout and exit.")
    parser.add_argument("--nobanlog", dest="no_ban_log", action="store_true", default=None,
                        help="Do not append to the ban audit log.")
    parser.add_argument("--unban", action="append", default=None, metavar="IP",
                        help="Lift the ban on IP and exit (can repeat).")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def _install_stop_handlers(stop: threading.Event) -> dict:
    """Route SIGINT/SIGTERM to stop; return the previous handlers."""
    def _handler(signum, frame):
        logger.log_info("Signal received; stopping after the current cycle", signal=signum)
        stop.set()

    return {sig: signal.signal(sig, _handler) for sig in STOP_SIGNALS}


def main(argv: Optional[List[str]] = None) -> int:
    """
    Entry point. Returns the process exit code.

    0 on success, 1 when the log cannot be read or a manual unban fails,
    2 for configuration errors.
    """
    args = build_parser().parse_args(argv)
    overrides = {k: v for k, v in vars(args).items() if k not in ("config", "unban")}

    try:
        cfg = load_config(args.config).merged(overrides).validate()
        logger.configure(stream=sys.stderr if cfg.export else None, debug=cfg.debug)
        backend = get_backend(cfg.firewall, timeout=cfg.command_timeout)
    except ConfigError as e:
        logger.log_error("Invalid configuration", error=str(e))
        return EXIT_CONFIG

    logger.log_info("XRDP Guard started", version=__version__)
    logger.log_debug(
        "Configuration",
        log=str(cfg.log_path),
        period_seconds=cfg.period_seconds,
        max_fails=cfg.max_fails,
        firewall=cfg.firewall,
        loop_seconds=cfg.loop_seconds if cfg.looping else "OFF",
    )

    if args.unban:
        return EXIT_OK if guard.unban_addresses(backend, args.unban) else EXIT_FATAL

    stop = threading.Event()
    previous = _install_stop_handlers(stop)
    try:
        guard.run_loop(cfg, backend, stop)
    except LogFormatError as e:
        logger.log_error("xrdp log format not understood", path=str(cfg.log_path), error=str(e))
        return EXIT_FATAL
    except OSError as e:
        logger.log_error("Could not read xrdp log", path=str(cfg.log_path), error=str(e))
        return EXIT_FATAL
    except ValueError as e:
        logger.log_error("Detection aborted", error=str(e))
        return EXIT_FATAL
    finally:
        for sig, handler in previous.items():
            if handler is not None:
                signal.signal(sig, handler)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
