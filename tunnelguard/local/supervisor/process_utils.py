import sys
import time
import psutil
import logging
import threading
import subprocess
from typing import Any, Callable, Dict, List, Optional
from .config_utils import TunnelConfig, build_ssh_command
from .shutdown import terminate_gracefully

log = logging.getLogger(__name__)


#* --- Process Status & Monitoring ---
def pid_exists(pid: int) -> bool:
    """A wrapper for psutil.pid_exists for easy testing/mocking if needed."""
    return psutil.pid_exists(pid)

def is_process_alive(proc: psutil.Process) -> bool:
    """True if the process exists and is not a zombie."""
    try:
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # It exists; we just cannot inspect it.
        return True


class ProcessHandle:
    """
    The supervisor's reference to one spawned tunnel process.

    A handle is never reused: once terminated it reports dead forever and a
    relaunch always produces a new handle.
    """

    def __init__(self, popen: subprocess.Popen, command: List[str]):
        self.popen = popen
        self.command = list(command)
        self.launched_at = time.time()
        self.process = psutil.Process(popen.pid)
        self._terminated = False

    @property
    def pid(self) -> int:
        return self.popen.pid

    @property
    def terminated(self) -> bool:
        return self._terminated

    def is_alive(self) -> bool:
        """Read-only OS-level liveness query."""
        if self._terminated:
            return False
        return is_process_alive(self.process)

    def terminate(self, grace_period: float) -> None:
        """
        Stops the process: SIGTERM, then SIGKILL after `grace_period` seconds.
        Safe to call more than once.
        """
        if self._terminated:
            return
        self._terminated = True
        terminate_gracefully(self.process, grace_period)
        try:
            # Reap the child so it does not linger as a zombie.
            self.popen.wait(timeout=1)
        except subprocess.TimeoutExpired:
            log.warning(f"Tunnel process {self.pid} could not be reaped after termination.")

    def __repr__(self) -> str:
        return f"<ProcessHandle pid={self.pid} terminated={self._terminated}>"


#* --- Process Creation ---
def get_popen_creation_flags() -> Dict[str, Any]:
    """Returns platform-specific creation flags for subprocess.Popen."""
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.CREATE_NO_WINDOW}
    # Keep Ctrl+C in the console from reaching the tunnel directly.
    return {"start_new_session": True}

def _read_pipe(pipe, process_name: str, level: int, line_handler: Optional[Callable] = None):
    """Target function for reader threads. Reads and logs lines from a subprocess pipe."""
    proc_logger = logging.getLogger(f"proc.{process_name}")
    try:
        for line_bytes in iter(pipe.readline, b""):
            line = line_bytes.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            if line_handler:
                line_handler(line)
            else:
                proc_logger.log(level, line)
    except Exception as e:
        proc_logger.debug(f"Pipe reader for {process_name} stream exited: {e}")
    finally:
        pipe.close()

def log_process_output(process: subprocess.Popen, name: str, line_handler: Optional[Callable] = None):
    """Starts background threads to consume and log a process's stdout/stderr."""
    if process.stdout:
        threading.Thread(
            target=_read_pipe, args=(process.stdout, name, logging.INFO, line_handler),
            daemon=True, name=f"{name}-stdout"
        ).start()
    if process.stderr:
        threading.Thread(
            target=_read_pipe, args=(process.stderr, name, logging.ERROR),
            daemon=True, name=f"{name}-stderr"
        ).start()

def spawn_tunnel(config: TunnelConfig) -> ProcessHandle:
    """
    Starts the SSH SOCKS5 tunnel client.

    :param config: The tunnel configuration.
    :return: A handle for the new process.
    :raises OSError: If the client binary cannot be executed.
    """
    args = build_ssh_command(config)
    log.debug(f"Spawning tunnel: {' '.join(args)}")
    p = subprocess.Popen(
        args,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        **get_popen_creation_flags()
    )
    log_process_output(p, "tunnel")
    # An exited child stays a zombie until reaped, so attaching cannot race its exit.
    handle = ProcessHandle(p, args)
    log.info(f"Tunnel process started with PID: {p.pid}")
    return handle
