import os
import socket
import psutil
import logging
from typing import Any, Dict, Optional
from .config_utils import TunnelConfig
from .errors import ConfigInvalid
from .shutdown import terminate_gracefully
from . import persistence, process_utils

log = logging.getLogger(__name__)


def check_if_already_running(config: TunnelConfig) -> Optional[int]:
    """
    Checks if another supervisor already owns this proxy port.

    :return: The PID of the live supervisor, or None.
    """
    record = persistence.read_pid_record(config.pid_path)
    if not record:
        return None
    pid = record.get("supervisor")
    if isinstance(pid, int) and pid != os.getpid() and process_utils.pid_exists(pid):
        return pid
    return None


def clear_stale_record(config: TunnelConfig) -> None:
    """
    Removes a PID record left behind by a dead supervisor, terminating the
    orphaned tunnel it was still pointing at.
    """
    record: Optional[Dict[str, Any]] = persistence.read_pid_record(config.pid_path)
    if not record:
        return

    tunnel_pid = record.get("tunnel")
    if isinstance(tunnel_pid, int) and process_utils.pid_exists(tunnel_pid):
        try:
            proc = psutil.Process(tunnel_pid)
            if "ssh" in proc.name().lower():
                log.warning(f"Terminating orphaned tunnel process from a previous session (PID {tunnel_pid}).")
                terminate_gracefully(proc, config.graceful_shutdown_timeout)
            else:
                log.debug(f"PID {tunnel_pid} was recycled by '{proc.name()}'; leaving it alone.")
        except psutil.Error as e:
            log.debug(f"Could not inspect stale tunnel PID {tunnel_pid}: {e}")

    log.info("Removing stale PID record...")
    persistence.cleanup_state_files(config.pid_path)


def is_port_in_use(host: str, port: int) -> bool:
    """Check if something already accepts connections on the port."""
    try:
        with socket.create_connection((host, port), timeout=1):
            return True
    except OSError:
        return False


def clear_shutdown_signal(config: TunnelConfig) -> bool:
    """
    Deletes a shutdown signal file left over from an earlier session.

    A file written after this process started is a stop request aimed at
    this very session and is kept.

    :return: True if a stop was requested for this session.
    """
    path = config.shutdown_signal_path
    try:
        signalled_at = path.stat().st_mtime
    except FileNotFoundError:
        return False
    if signalled_at >= psutil.Process().create_time():
        log.info("Shutdown was requested while the supervisor was starting.")
        return True
    path.unlink(missing_ok=True)
    return False


def prepare_session(config: TunnelConfig) -> bool:
    """
    Clears leftovers from previous sessions before a fresh launch.

    :return: True if a stop request for this session is already pending.
    :raises ConfigInvalid: If the proxy port is already taken by another process.
    """
    clear_stale_record(config)
    if clear_shutdown_signal(config):
        return True
    if is_port_in_use(config.probe_host, config.proxy_port):
        raise ConfigInvalid([f"Port {config.proxy_port} is already in use by another process"])
    return False
