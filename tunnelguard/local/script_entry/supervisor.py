"""
This is a minimal entry point script for the background supervisor process.

Its sole responsibility is to run the tunnel supervisor until it is told to
stop. The console starts it with `python -m tunnelguard.local.script_entry.supervisor`
so the tunnel keeps running after the console exits.
"""
import sys
import logging
from tunnelguard.local.manager import run_supervisor
from tunnelguard.local.supervisor.errors import ConfigInvalid

log = logging.getLogger(__name__)


def main() -> int:
    try:
        return run_supervisor(verbose="--verbose" in sys.argv[1:])
    except ConfigInvalid as e:
        log.critical(f"Supervisor cannot start: {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
