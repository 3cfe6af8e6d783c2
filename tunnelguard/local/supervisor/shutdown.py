import psutil
import logging
from .errors import ProcessTerminationFailed

log = logging.getLogger(__name__)

# How long to wait for the kernel to reap a process after SIGKILL.
KILL_WAIT_SECONDS = 2


def _graceful_stop(proc: psutil.Process, grace_period: float) -> None:
    """
    Sends SIGTERM and waits for the process to exit.

    :raises ProcessTerminationFailed: If it is still running after the grace period.
    """
    try:
        log.debug(f"Sending SIGTERM to PID {proc.pid}")
        proc.terminate()
        proc.wait(timeout=grace_period)
    except psutil.NoSuchProcess:
        log.debug(f"Process {proc.pid} no longer exists, skipping termination.")
    except psutil.TimeoutExpired:
        raise ProcessTerminationFailed(proc.pid, grace_period)


def _forceful_kill(proc: psutil.Process) -> None:
    """Forcefully kills a process that didn't terminate gracefully."""
    try:
        proc.kill()
        proc.wait(timeout=KILL_WAIT_SECONDS)
    except psutil.NoSuchProcess:
        return
    except psutil.TimeoutExpired:
        log.error(f"Process {proc.pid} survived SIGKILL for {KILL_WAIT_SECONDS}s.")


def terminate_gracefully(proc: psutil.Process, grace_period: float) -> None:
    """
    Stops a single process: SIGTERM first, SIGKILL once the grace period is over.

    :param proc: The psutil.Process to stop.
    :param grace_period: Seconds to wait after SIGTERM before killing.
    """
    try:
        _graceful_stop(proc, grace_period)
    except ProcessTerminationFailed as e:
        log.warning(f"{e} Escalating to SIGKILL.")
        _forceful_kill(proc)
