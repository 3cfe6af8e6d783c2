"""
This module contains almost all the configuration settings for TunnelGuard.
It defines paths, connection parameters, supervisor tunables and logging settings.
Environment variables (or a `.env` file) override the connection parameters.
"""

import os
import pathlib
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=True)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ('true', '1', 't', 'yes', 'y')


#* --- Core Paths ---
BIN_DIR = pathlib.Path(os.getenv("TUNNELGUARD_HOME", str(pathlib.Path.home() / ".tunnelguard")))
LOGS_DIR = BIN_DIR / "logs"

#* --- Application File Paths ---
LOG_DB_PATH = LOGS_DIR / "tunnelguard_logs.db"
OVERRIDES_JSON_PATH = BIN_DIR / "overrides.json"
# Per-port state files, formatted with the proxy port.
PID_FILE_TEMPLATE = "tunnel_{port}.pid"
STATS_FILE_TEMPLATE = "tunnel_{port}.stats"
SHUTDOWN_SIGNAL_TEMPLATE = "tunnel_{port}.shutdown"

#* --- Remote SSH Server ---
REMOTE_USER = os.getenv("TUNNEL_REMOTE_USER", "root")
REMOTE_HOST = os.getenv("TUNNEL_REMOTE_HOST", "your-server.com")
REMOTE_PORT = int(os.getenv("TUNNEL_REMOTE_PORT", "22"))
PLACEHOLDER_REMOTE_HOST = "your-server.com"

#* --- Local Proxy ---
PROXY_PORT = int(os.getenv("TUNNEL_PROXY_PORT", "1337"))
# 0.0.0.0 = all interfaces, 127.0.0.1 = localhost only
LOCAL_BIND_IP = os.getenv("TUNNEL_BIND_IP", "127.0.0.1")

#* --- SSH Client ---
SSH_BINARY = os.getenv("TUNNEL_SSH_BINARY", "ssh")
SSH_OPTIONS = os.getenv(
    "TUNNEL_SSH_OPTIONS",
    "-o ConnectTimeout=10 -o ServerAliveInterval=60 -o ServerAliveCountMax=3"
)
# Always appended: never block on a password prompt, die if the port cannot be bound.
SSH_FORCED_OPTIONS = ["-o", "BatchMode=yes", "-o", "ExitOnForwardFailure=yes"]

#* --- Health Probe ---
PROBE_ENABLED = _env_flag("TUNNEL_PROBE_ENABLED", "True")
PROBE_URL = os.getenv("TUNNEL_PROBE_URL", "http://clients3.google.com/generate_204")
PROBE_TIMEOUT = 10.0  # seconds

#* --- Supervisor Settings ---
HEALTH_CHECK_INTERVAL = 30.0    # seconds between periodic checks
MIN_HEALTH_CHECK_INTERVAL = 10.0  # lower bound, avoids probe storms
MAX_LAUNCH_ATTEMPTS = 5
LAUNCH_SETTLE_SECONDS = 3.0     # wait after spawn before the first check
BACKOFF_INITIAL_DELAY = 5.0     # seconds
BACKOFF_MAX_DELAY = 300.0       # seconds
BACKOFF_JITTER = 0.0            # ratio of the delay, 0 disables jitter
GRACEFUL_SHUTDOWN_TIMEOUT = 10.0  # seconds before force-killing
SUPERVISOR_START_TIMEOUT = 120  # console wait for the background supervisor
SUPERVISOR_PROCESS_TITLE = "TunnelGuard - Supervisor"

#* --- Application variables ---
VERBOSE_LOGGING = False

#* --- MODIFIABLE SETTINGS (Changeable at runtime via 'config' command) ---
MODIFIABLE_SETTINGS = {
    # Supervisor
    "HEALTH_CHECK_INTERVAL", "MAX_LAUNCH_ATTEMPTS", "LAUNCH_SETTLE_SECONDS",
    "BACKOFF_INITIAL_DELAY", "BACKOFF_MAX_DELAY", "BACKOFF_JITTER",
    "GRACEFUL_SHUTDOWN_TIMEOUT",
    # Probe
    "PROBE_ENABLED", "PROBE_URL", "PROBE_TIMEOUT",
    # Logging
    "LOG_BUFFER_SIZE", "LOG_BUFFER_FLUSH_INTERVAL",
    "MAX_LOG_DB_SIZE_MB", "LOG_DB_SIZE_CHECK_INTERVAL_SECONDS", "LOG_HISTORY_COUNT",
}

#* --- Default Values for Modifiable Logging Settings ---
LOG_BUFFER_SIZE = 100
LOG_BUFFER_FLUSH_INTERVAL = 10
MAX_LOG_DB_SIZE_MB = 50
LOG_DB_SIZE_CHECK_INTERVAL_SECONDS = 12 * 3600  # 12 hours
LOG_HISTORY_COUNT = 20
