"""
XRDP Guard - Entry point.

Orchestrates (see xrdpguard.guard):
1. Correlate the xrdp log into login attempts
2. Flag addresses with too many failed logins in the time window
3. Ban them through the selected firewall backend (unless --dryrun)
4. Record each batch of bans in the ban log

Whitelisted addresses are never banned. Run with --help for options.
"""

import sys
from pathlib import Path

# Add project root so we can run: python main.py
PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from xrdpguard import cli


if __name__ == "__main__":
    sys.exit(cli.main())
