import sys
import time
import psutil
import logging
from typing import List, Optional
from tunnelguard.local import app_globals
from tunnelguard.local.database import LogDBManager
from tunnelguard.local.manager import TunnelManager
from tunnelguard.local.supervisor import persistence
from tunnelguard.local.supervisor.config_utils import (
    TunnelConfig, build_ssh_command, check_prerequisites, validate_config, verify_ssh_login
)

# --- Platform-specific non-blocking keypress detection ---
if sys.platform == "win32":
    import msvcrt

    def is_keypress_waiting() -> bool:
        return msvcrt.kbhit()

    def clear_keypress_buffer() -> None:
        while msvcrt.kbhit():
            msvcrt.getch()
else:
    import select
    import termios
    import tty

    def is_keypress_waiting() -> bool:
        return select.select([sys.stdin], [], [], 0) == ([sys.stdin], [], [])

    def clear_keypress_buffer() -> None:
        # Raw mode so pending characters can be read without Enter.
        old_settings = termios.tcgetattr(sys.stdin)
        try:
            tty.setcbreak(sys.stdin.fileno())
            while is_keypress_waiting():
                sys.stdin.read(1)
        finally:
            termios.tcsetattr(sys.stdin, termios.TCSADRAIN, old_settings)

log = logging.getLogger(__name__)
tunnel_manager = TunnelManager()


def format_duration(seconds: float) -> str:
    """Formats a duration as 'Nd HH:MM:SS', dropping the day part when zero."""
    seconds = max(0, int(seconds))
    days, remainder = divmod(seconds, 86400)
    clock = time.strftime('%H:%M:%S', time.gmtime(remainder))
    return f"{days}d {clock}" if days else clock


def format_timestamp(timestamp: Optional[float]) -> str:
    if timestamp is None:
        return "never"
    return time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(timestamp))


#* --- Config command ---
def _config_show() -> None:
    """Displays the modifiable settings and the effective connection parameters."""
    config = TunnelConfig.from_settings(app_globals)
    print("\n--- Current Tunnel Configuration ---")
    print(f"  Target        : {config.target}")
    print(f"  SOCKS5 bind   : {config.bind_ip}:{config.proxy_port}")
    print(f"  SSH command   : {' '.join(build_ssh_command(config))}")
    print(f"  State dir     : {config.state_dir}")
    print("\n  Modifiable settings:")
    for key in sorted(app_globals.MODIFIABLE_SETTINGS):
        print(f"    {key} = {app_globals.get(key, 'N/A')}")
    print("---")
    print("Use 'config set <KEY> <VALUE>' to change a setting.")
    print("A running supervisor only picks up changes after 'restart'.")
    print("------------------------------------\n")


def _config_set(args: List[str]) -> None:
    """Changes a modifiable setting and persists it to the overrides file."""
    if len(args) < 2:
        print("Usage: config set <SETTING_NAME> <VALUE>")
        return

    key, value_str = args[0].upper(), " ".join(args[1:])
    success, message = app_globals.update_setting(key, value_str)
    if success:
        print(message)
    else:
        print(f"Error: {message}")


def _config_help() -> None:
    print("\nConfig Command Help:")
    print("  config show                - Display the effective configuration.")
    print("  config set KEY VALUE       - Change a setting. A restart is required to apply it.")
    print("  config help                - Show this help message.")
    print("Connection settings (user, host, port) come from the environment or a .env file.")


def handle_config_command(args: List[str]) -> None:
    """
    Handles all sub-commands for the 'config' command-line interface.

    :param args: A list of string arguments following the 'config' command.
    """
    sub_command = args[0].lower() if args else "show"

    if sub_command == "show":
        _config_show()
    elif sub_command == "set":
        _config_set(args[1:])
    elif sub_command == "help":
        _config_help()
    else:
        print(f"Unknown config sub-command: '{sub_command}'. Type 'config help' for available commands.")


def handle_check_config_command() -> None:
    """
    Validates the configuration and host prerequisites, then attempts a
    non-interactive SSH login to the configured server.

    :raises ConfigInvalid: If the configuration or the host is unusable.
    """
    config = validate_config(TunnelConfig.from_settings(app_globals))
    check_prerequisites(config)
    print(f"Configuration is valid. Testing SSH login to {config.target}...")
    if verify_ssh_login(config):
        print("SSH login succeeded. The proxy can be started.")
    else:
        print("SSH login failed. Make sure key-based authentication is set up for this server.")


#* --- Status ---
def _describe_process(label: str, pid: Optional[int]) -> None:
    if not pid:
        print(f"  {label:<14}: -")
        return
    try:
        p = psutil.Process(pid)
        cpu = p.cpu_percent(interval=0.1)
        mem = p.memory_info().rss
        print(f"  {label:<14}: PID {pid:<8} | Status: {p.status().upper()} | CPU: {cpu:.1f}% | MEM: {mem/1024/1024:.1f} MB")
    except psutil.NoSuchProcess:
        print(f"  {label:<14}: PID {pid:<8} | Status: STOPPED (Stale PID)")
    except psutil.AccessDenied:
        print(f"  {label:<14}: PID {pid:<8} | Status: RUNNING (Access Denied)")


def display_status() -> None:
    """
    Displays the last state published by the supervisor together with the
    session statistics. Never triggers a health check.
    """
    config = TunnelConfig.from_settings(app_globals)
    record, stats, alive = tunnel_manager.get_status()
    if not record:
        print(f"\nProxy on port {config.proxy_port} is STOPPED (No PID file found).\n")
        return

    print("\n--- Tunnel Status ---")
    print(f"  {'Target':<14}: {config.target}")
    print(f"  {'SOCKS5 proxy':<14}: {config.bind_ip}:{config.proxy_port}")
    print(f"  {'State':<14}: {str(record.get('state', 'unknown')).upper()}")
    if record.get("health"):
        print(f"  {'Last check':<14}: {record['health']}")
    _describe_process("Supervisor", record.get("supervisor"))
    _describe_process("Tunnel", record.get("tunnel"))
    if record.get("updated_at"):
        print(f"  {'Last update':<14}: {format_timestamp(record['updated_at'])}")

    if stats:
        print(f"  {'Uptime':<14}: {format_duration(stats.uptime())}")
        print(f"  {'Reconnects':<14}: {stats.reconnect_count} (last: {format_timestamp(stats.last_reconnect)})")
    else:
        print(f"  {'Uptime':<14}: unknown (no session statistics)")

    if not alive:
        print("\nWARNING: The supervisor is not running but a stale PID file exists.")
        print("You should run 'stop' to clean it up before starting again.")
    print("-" * 21 + "\n")


#* --- Logs ---
def handle_logs_command() -> None:
    """
    Handles the 'logs' command: prints the recent history, then tails new
    entries until a key is pressed.
    """
    log_db = LogDBManager(app_globals.LOG_DB_PATH)
    include_debug = app_globals.VERBOSE_LOGGING

    print(f"\n--- Displaying last {app_globals.LOG_HISTORY_COUNT} log entries ---")
    last_id = 0
    for log_entry in log_db.fetch_last_entries(app_globals.LOG_HISTORY_COUNT, include_debug):
        print(log_entry.message)
        last_id = max(last_id, log_entry.id)

    if not sys.stdin.isatty() or not persistence.read_pid_record(TunnelConfig.from_settings(app_globals).pid_path):
        return

    print("\n--- Now tailing new log entries (Press any key to stop) ---\n")
    try:
        while not is_keypress_waiting():
            new_logs, last_id = log_db.listen_for_updates(last_id)
            for log_entry in new_logs:
                if log_entry.level == "DEBUG" and not include_debug:
                    continue
                print(log_entry.message)
            time.sleep(1)
        clear_keypress_buffer()
        print("\n--- Log tailing stopped. Returning to console. ---")
    except KeyboardInterrupt:
        print("\n--- Log tailing interrupted. Returning to console. ---")


#* --- Misc ---
def toggle_verbose_logging() -> None:
    """Switches the console output between INFO and DEBUG."""
    app_globals.VERBOSE_LOGGING = not app_globals.VERBOSE_LOGGING
    level = logging.DEBUG if app_globals.VERBOSE_LOGGING else logging.INFO

    # FileHandler subclasses StreamHandler; only the console stream is adjusted.
    console_handlers = [h for h in logging.getLogger().handlers if type(h) is logging.StreamHandler]
    for handler in console_handlers:
        handler.setLevel(level)

    if not console_handlers:
        print("No console log handler found; verbose mode only affects the 'logs' command.")
        return
    print(f"Verbose console logging is now {'ON' if app_globals.VERBOSE_LOGGING else 'OFF'}.")
    log.debug("Verbose logging enabled.")


def print_help() -> None:
    """Prints the main help text for the console."""
    print("\nAvailable commands:")
    print("  start                  - Start the SOCKS5 proxy and its supervisor in the background.")
    print("  stop                   - Stop the proxy and its supervisor gracefully.")
    print("  restart                - Stop and then start the proxy.")
    print("  status                 - Show the tunnel state, uptime and reconnect count.")
    print("  run                    - Run the supervisor in the foreground (Ctrl+C to stop).")
    print("  logs                   - View recent logs and tail new entries.")
    print("  check-config           - Validate the configuration and test the SSH login.")
    print("  config <cmd>           - Manage configuration. Use 'config help' for more details.")
    print("  verbose                - Toggle detailed DEBUG log output in the console.")
    print("  exit                   - Exit the management console.")
    print()
