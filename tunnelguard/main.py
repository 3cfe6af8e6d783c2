import sys
import logging
import threading
from typing import List

# Console-only logging until setup_logging() attaches the SQLite handler.
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)-8s - [console] - %(message)s',
    stream=sys.stdout
)
log = logging.getLogger("console")

import tunnelguard.local.console as console
from tunnelguard.log.setup import setup_logging
from tunnelguard.local.manager import TunnelManager

CONSOLE_LOCK = threading.Lock()
tunnel_manager = TunnelManager()


def _run_one_off(argv: List[str]) -> None:
    """Runs a single command given on the command line, e.g. `tunnelguard status`."""
    command, args = argv[0].lower(), argv[1:]
    if "--verbose" in args:
        args.remove("--verbose")
        console.toggle_verbose_logging()
    console.execute_command(command, args)


def _interactive_loop() -> None:
    print("--- TunnelGuard Management Console ---")
    print("Type 'help' for a list of commands.")

    with CONSOLE_LOCK:
        record = tunnel_manager.get_pid_info()
    status = f"running ({record.get('state', 'unknown')})" if record else "stopped"
    print(f"SOCKS5 proxy is currently {status}.")

    while True:
        try:
            # Read outside the lock so background log output is not blocked.
            command_line = input("> ").strip().split()
            if not command_line:
                continue
            with CONSOLE_LOCK:
                command, args = command_line[0].lower(), command_line[1:]
                log.debug(f"Received command: {command}, args: {args}")
                if console.execute_command(command, args):
                    break
        except (KeyboardInterrupt, EOFError):
            print()
            log.warning("Exiting console.")
            break
        except Exception as e:
            log.error(f"An unexpected error occurred in the console: {e}", exc_info=True)


def main() -> None:
    """Entry point of the `tunnelguard` command."""
    setup_logging(logging.INFO)
    if len(sys.argv) > 1:
        _run_one_off(sys.argv[1:])
        return
    _interactive_loop()
    print("Exiting console. A started proxy keeps running until you 'stop' it.")


if __name__ == "__main__":
    main()
