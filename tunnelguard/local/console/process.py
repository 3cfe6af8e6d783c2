import logging
from typing import List
from tunnelguard.local import app_globals
from tunnelguard.local.manager import run_supervisor
from tunnelguard.local.supervisor.errors import ConfigInvalid
from .handler import (
    tunnel_manager, display_status, handle_config_command, handle_check_config_command,
    handle_logs_command, toggle_verbose_logging, print_help
)

log = logging.getLogger(__name__)


def _run_foreground() -> None:
    """Runs the supervisor in this console until Ctrl+C or a 'stop' from another console."""
    print("Running the supervisor in the foreground. Press Ctrl+C to stop.")
    exit_code = run_supervisor(app_globals.VERBOSE_LOGGING)
    if exit_code:
        print(f"Supervisor exited with code {exit_code}. Use 'logs' for details.")


def execute_command(command: str, args: List[str]) -> bool:
    """
    Executes a given command by dispatching it to the appropriate handler.

    :param command: The command to execute (e.g., "start", "stop").
    :param args: A list of arguments for the command.
    :return: True if the console should exit, False otherwise.
    """
    command_map = {
        "start": lambda: tunnel_manager.start(app_globals.VERBOSE_LOGGING),
        "stop": tunnel_manager.stop,
        "restart": lambda: tunnel_manager.restart(app_globals.VERBOSE_LOGGING),
        "status": display_status,
        "run": _run_foreground,
        "check-config": handle_check_config_command,
        "config": lambda: handle_config_command(args),
        "logs": handle_logs_command,
        "verbose": toggle_verbose_logging,
        "help": print_help,
    }

    if command == "exit":
        return True

    if command in command_map:
        try:
            command_map[command]()
        except ConfigInvalid as e:
            print(f"\nERROR: {e}\n")
    else:
        print(f"Unknown command: '{command}'. Type 'help' for a list of commands.")
    return False
