import sys
import time
import signal
import psutil
import logging
import subprocess
import setproctitle
from typing import Any, Dict, Optional, Tuple
from tunnelguard.local import app_globals
from tunnelguard.log.setup import setup_logging
from tunnelguard.local.supervisor import persistence, process_utils, shutdown, startup
from tunnelguard.local.supervisor.persistence import Stats, StatsTracker
from tunnelguard.local.supervisor.supervisor import SupervisorState, TunnelSupervisor, loop_join_timeout
from tunnelguard.local.supervisor.config_utils import TunnelConfig, check_prerequisites, validate_config

log = logging.getLogger(__name__)

SUPERVISOR_MODULE = "tunnelguard.local.script_entry.supervisor"


class TunnelManager:
    """
    Console-side controller for the background supervisor process.

    The supervisor runs in its own detached process so the tunnel outlives
    the console. This class only talks to it through the PID record, the
    stats record, the shutdown signal file and OS signals.
    """

    def __init__(self, settings: Any = app_globals) -> None:
        self.settings = settings

    @property
    def config(self) -> TunnelConfig:
        # Rebuilt on every access so 'config set' is honoured by the next start.
        return TunnelConfig.from_settings(self.settings)

    def get_pid_info(self) -> Optional[Dict[str, Any]]:
        """
        Reads the PID record of the supervised port.

        :return: The record if present and valid, else None.
        """
        return persistence.read_pid_record(self.config.pid_path)

    def get_status(self) -> Tuple[Optional[Dict[str, Any]], Optional[Stats], bool]:
        """
        Collects the persisted view of the tunnel without running a health check.

        :return: (PID record, stats, supervisor alive).
        """
        config = self.config
        record = persistence.read_pid_record(config.pid_path)
        stats = StatsTracker(config.stats_path).read() if record else None
        alive = bool(record) and process_utils.pid_exists(record.get("supervisor", -1))
        return record, stats, alive

    def start(self, verbose: bool = False) -> bool:
        """
        Starts the background supervisor unless one is already running.

        :param verbose: If True, the supervisor logs at DEBUG level.
        :return: True once the tunnel reports running, False on failure.
        :raises ConfigInvalid: If the configuration is invalid.
        """
        config = validate_config(self.config)
        check_prerequisites(config)

        running_pid = startup.check_if_already_running(config)
        if running_pid:
            log.warning(f"Proxy already running (supervisor PID: {running_pid}).")
            return True
        startup.clear_stale_record(config)
        persistence.cleanup_state_files(config.shutdown_signal_path)

        args = [sys.executable, "-m", SUPERVISOR_MODULE]
        if verbose:
            args.append("--verbose")
        log.info(f"Starting tunnel supervisor for {config.target} on port {config.proxy_port}...")
        try:
            proc = subprocess.Popen(
                args, stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL,
                **process_utils.get_popen_creation_flags()
            )
        except OSError as e:
            log.critical(f"Failed to start the supervisor process: {e}", exc_info=True)
            return False

        return self._wait_for_supervisor(proc, config)

    def _wait_for_supervisor(self, proc: subprocess.Popen, config: TunnelConfig) -> bool:
        """Polls the PID record until the new supervisor reports running or gives up."""
        deadline = time.monotonic() + self.settings.SUPERVISOR_START_TIMEOUT
        while time.monotonic() < deadline:
            exit_code = proc.poll()
            if exit_code is not None:
                log.error(f"Supervisor exited during startup (exit code {exit_code}). Use 'logs' for details.")
                return False
            record = persistence.read_pid_record(config.pid_path)
            if record and record.get("supervisor") == proc.pid:
                if record.get("state") == SupervisorState.RUNNING.value:
                    log.info(f"SOCKS5 proxy started successfully (tunnel PID: {record.get('tunnel')}, "
                             f"supervisor PID: {proc.pid}).")
                    return True
            time.sleep(0.5)

        log.warning(
            f"Supervisor (PID {proc.pid}) did not report a running tunnel within "
            f"{self.settings.SUPERVISOR_START_TIMEOUT}s; it keeps retrying in the background."
        )
        return False

    def stop(self) -> None:
        """Stops the background supervisor and its tunnel. Safe to call when stopped."""
        config = self.config
        record = persistence.read_pid_record(config.pid_path)
        if not record:
            log.info("Proxy is not running (no PID record found).")
            persistence.cleanup_state_files(config.stats_path, config.shutdown_signal_path)
            return

        supervisor_pid = record.get("supervisor")
        if isinstance(supervisor_pid, int) and process_utils.pid_exists(supervisor_pid):
            config.shutdown_signal_path.parent.mkdir(parents=True, exist_ok=True)
            config.shutdown_signal_path.touch()
            log.info(f"Stopping tunnel supervisor (PID: {supervisor_pid})...")
            try:
                # The supervisor waits out its health-check loop, then the tunnel grace period.
                grace = loop_join_timeout(config) + config.graceful_shutdown_timeout + 5
                shutdown.terminate_gracefully(psutil.Process(supervisor_pid), grace)
            except psutil.NoSuchProcess:
                log.debug(f"Supervisor PID {supervisor_pid} exited before it could be signalled.")
            except psutil.AccessDenied:
                log.error(f"Not permitted to signal supervisor PID {supervisor_pid}. Was it started by another user?")
                return
        else:
            log.warning("PID record exists but the supervisor is not running.")

        # Clean up whatever a killed supervisor left behind.
        startup.clear_stale_record(config)
        persistence.cleanup_state_files(config.stats_path, config.shutdown_signal_path)
        log.info("Proxy stopped.")

    def restart(self, verbose: bool = False) -> bool:
        """Stops and then starts the proxy."""
        log.info("Restarting SOCKS5 proxy...")
        self.stop()
        time.sleep(2)
        return self.start(verbose)


def run_supervisor(verbose: bool = False) -> int:
    """
    Runs the supervisor in the current process until it is told to stop.
    Used by the background entry point and by the console 'run' command.

    :return: A process exit code.
    """
    setup_logging(logging.DEBUG if verbose else logging.INFO)
    config = TunnelConfig.from_settings(app_globals)
    setproctitle.setproctitle(f"{app_globals.SUPERVISOR_PROCESS_TITLE} :{config.proxy_port}")

    supervisor = TunnelSupervisor(config)

    def _handle_signal(signum, _frame):
        log.info(f"Received signal {signal.Signals(signum).name}; shutting down.")
        supervisor.request_shutdown()

    previous_handlers = {sig: signal.signal(sig, _handle_signal) for sig in (signal.SIGTERM, signal.SIGINT)}
    log.info("=" * 20 + " Tunnel Supervisor Starting " + "=" * 20)
    try:
        return supervisor.run_forever()
    finally:
        # The console 'run' command returns to the prompt afterwards.
        for sig, handler in previous_handlers.items():
            signal.signal(sig, handler)
