import os
import logging
import threading
from enum import Enum
from dataclasses import dataclass
from typing import Callable, Optional
from . import persistence, startup
from .backoff import BackoffPolicy
from .health import HealthChecker, HealthVerdict
from .launcher import Launcher
from .process_utils import ProcessHandle
from .persistence import Stats, StatsTracker
from .errors import LaunchCancelled, LaunchExhausted
from .config_utils import TunnelConfig, check_prerequisites, validate_config

log = logging.getLogger(__name__)


class SupervisorState(str, Enum):
    STOPPED = "stopped"
    LAUNCHING = "launching"
    RUNNING = "running"
    UNHEALTHY = "unhealthy"
    RELAUNCHING = "relaunching"
    SHUTTING_DOWN = "shutting_down"


# States in which the supervisor owns a live session.
ACTIVE_STATES = {SupervisorState.RUNNING, SupervisorState.UNHEALTHY, SupervisorState.RELAUNCHING}

LOOP_EXIT_MARGIN = 5.0  # seconds


def loop_join_timeout(config: TunnelConfig) -> float:
    """
    How long `stop()` waits for the health-check loop to notice the shutdown.

    requests applies the probe timeout to the connect and the read phase
    separately, so a probe in flight may take up to twice that long.
    """
    return 2 * config.probe_timeout + config.graceful_shutdown_timeout + LOOP_EXIT_MARGIN


@dataclass(frozen=True)
class SupervisorStatus:
    """Point-in-time snapshot for status queries. Never triggers a health check."""
    state: SupervisorState
    supervisor_pid: int
    tunnel_pid: Optional[int]
    stats: Optional[Stats]
    last_verdict: Optional[HealthVerdict]
    last_error: Optional[str]


class TunnelSupervisor:
    """
    Owns the single active tunnel process and keeps it healthy.

    `start()` launches the tunnel in the calling thread and, once it is up,
    runs the periodic health-check loop in a background thread. On a failed
    check the tunnel is replaced through the Launcher. If a whole launch
    sequence is exhausted during a relaunch, the loop waits one more check
    interval and tries again, indefinitely, until `stop()` is called.

    The supervisor is the only component that terminates or replaces the
    active handle.
    """

    def __init__(self, config: TunnelConfig,
                 launcher: Optional[Launcher] = None,
                 health_checker: Optional[HealthChecker] = None,
                 stats: Optional[StatsTracker] = None,
                 event_factory: Callable[[], threading.Event] = threading.Event):
        self.config = config
        self.health_checker = health_checker
        self.launcher = launcher
        self.stats = stats or StatsTracker(config.stats_path)
        # Only a supervisor that spawns real ssh processes runs host preflight checks.
        self._spawns_real_tunnel = launcher is None
        self._event_factory = event_factory

        self._lock = threading.RLock()
        self._state = SupervisorState.STOPPED
        self._handle: Optional[ProcessHandle] = None
        self._shutdown_event: threading.Event = event_factory()
        self._monitor_thread: Optional[threading.Thread] = None
        self._last_verdict: Optional[HealthVerdict] = None
        self._last_error: Optional[str] = None

    #* --- State bookkeeping ---
    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def active_handle(self) -> Optional[ProcessHandle]:
        return self._handle

    def _set_state(self, new_state: SupervisorState) -> None:
        """Applies a transition and publishes it to the PID record."""
        with self._lock:
            old_state = self._state
            if old_state == SupervisorState.SHUTTING_DOWN and new_state != SupervisorState.STOPPED:
                # A stop is in progress; late transitions from the loop are dropped.
                return
            if old_state == SupervisorState.STOPPED and new_state not in (
                    SupervisorState.STOPPED, SupervisorState.LAUNCHING, SupervisorState.SHUTTING_DOWN):
                # Only start() opens a session; a loop outliving stop() must not revive it.
                log.debug(f"Dropped transition {old_state.value} -> {new_state.value}.")
                return
            self._state = new_state
            if old_state != new_state:
                log.info(f"Supervisor state: {old_state.value} -> {new_state.value}")
            if new_state == SupervisorState.STOPPED:
                persistence.cleanup_state_files(self.config.pid_path)
            else:
                persistence.write_pid_record(
                    self.config.pid_path, os.getpid(),
                    self._handle.pid if self._handle else None, new_state.value,
                    self._last_verdict.describe() if self._last_verdict else None
                )

    def _record_verdict(self, verdict: Optional[HealthVerdict]) -> None:
        if verdict is None:
            return
        was_degraded = self._last_verdict is not None and self._last_verdict.degraded
        if verdict.degraded and not was_degraded:
            log.warning(
                f"Health checks running in degraded mode: {', '.join(verdict.skipped_layers)} "
                "skipped on this host."
            )
        self._last_verdict = verdict

    def _build_components(self) -> None:
        if self.health_checker is None:
            self.health_checker = HealthChecker(self.config)
        if self.launcher is None:
            backoff = BackoffPolicy(
                self.config.backoff_initial_delay, self.config.backoff_max_delay, self.config.backoff_jitter
            )
            self.launcher = Launcher(self.config, self.health_checker, backoff)

    #* --- Operator commands ---
    def start(self) -> bool:
        """
        Starts a fresh supervision session.

        :return: True if the tunnel is up and supervised (or already was), False otherwise.
        :raises ConfigInvalid: If the configuration or host prerequisites are invalid.
        """
        with self._lock:
            if self._state != SupervisorState.STOPPED:
                log.warning(f"Supervisor is already {self._state.value}; start ignored.")
                return self._state in ACTIVE_STATES

            self.config = validate_config(self.config)
            other_pid = startup.check_if_already_running(self.config)
            if other_pid:
                log.error(f"Port {self.config.proxy_port} is already supervised by PID {other_pid}. Use 'stop' or 'restart'.")
                return False
            if self._spawns_real_tunnel:
                check_prerequisites(self.config)
                if startup.prepare_session(self.config):
                    self.request_shutdown()
            self._build_components()

            # A shutdown requested before or during preflight cancels this start.
            event = self._shutdown_event
            if event.is_set():
                log.info("Shutdown requested before the tunnel was launched; start aborted.")
                self._shutdown_event = self._event_factory()
                return False
            self._last_error = None
            self._last_verdict = None
            self._set_state(SupervisorState.LAUNCHING)

        try:
            handle = self.launcher.launch(event)
        except LaunchCancelled:
            log.info("Tunnel start aborted by a shutdown request.")
            with self._lock:
                if self._state == SupervisorState.LAUNCHING:
                    self._set_state(SupervisorState.STOPPED)
                if self._shutdown_event is event:
                    self._shutdown_event = self._event_factory()
            return False
        except LaunchExhausted as e:
            log.critical(f"Could not start the tunnel: {e}")
            with self._lock:
                self._last_error = str(e)
                self._set_state(SupervisorState.STOPPED)
            return False

        with self._lock:
            if event.is_set():
                # stop() ran while the last attempt was being verified.
                handle.terminate(self.config.graceful_shutdown_timeout)
                if self._state == SupervisorState.LAUNCHING:
                    self._set_state(SupervisorState.STOPPED)
                if self._shutdown_event is event:
                    self._shutdown_event = self._event_factory()
                return False
            self._handle = handle
            self._record_verdict(self.launcher.last_verdict)
            self.stats.init()
            self._set_state(SupervisorState.RUNNING)
            self._monitor_thread = threading.Thread(
                target=self._supervision_loop, args=(event,),
                daemon=True, name="TunnelSupervisorThread"
            )
            self._monitor_thread.start()

        log.info(
            f"SOCKS5 proxy listening on {self.config.bind_ip}:{self.config.proxy_port} "
            f"via {self.config.target} (PID {handle.pid}). Health checks every "
            f"{self.config.health_check_interval}s."
        )
        return True

    def request_shutdown(self) -> None:
        """Interrupts any wait in progress. Safe to call from a signal handler."""
        self._shutdown_event.set()

    def stop(self) -> None:
        """
        Ends the session: interrupts waits, terminates the tunnel, clears the
        stats and exits the health-check loop. Calling it when already stopped
        is a no-op.
        """
        with self._lock:
            if self._state == SupervisorState.STOPPED and self._handle is None:
                log.info("Supervisor is already stopped.")
                return
            if self._state == SupervisorState.SHUTTING_DOWN:
                log.info("Supervisor shutdown already in progress.")
                return
            self._set_state(SupervisorState.SHUTTING_DOWN)
            event, thread = self._shutdown_event, self._monitor_thread

        event.set()
        if thread is not None and thread is not threading.current_thread():
            join_timeout = loop_join_timeout(self.config)
            thread.join(timeout=join_timeout)
            if thread.is_alive():
                log.warning(f"Health-check loop did not exit within {join_timeout}s.")

        with self._lock:
            handle, self._handle = self._handle, None
        if handle is not None:
            log.info(f"Terminating tunnel process (PID {handle.pid})...")
            handle.terminate(self.config.graceful_shutdown_timeout)

        self.stats.clear()
        with self._lock:
            self._monitor_thread = None
            self._set_state(SupervisorState.STOPPED)
            # The next session gets its own event; the old one stays set for a lingering loop.
            self._shutdown_event = self._event_factory()
        log.info("Tunnel supervisor stopped.")

    def restart(self) -> bool:
        """Stops the current session (if any) and starts a fresh one."""
        self.stop()
        return self.start()

    def status(self) -> SupervisorStatus:
        """Returns the latest known state and stats without checking health."""
        with self._lock:
            return SupervisorStatus(
                state=self._state,
                supervisor_pid=os.getpid(),
                tunnel_pid=self._handle.pid if self._handle else None,
                stats=self.stats.read() if self._state != SupervisorState.STOPPED else None,
                last_verdict=self._last_verdict,
                last_error=self._last_error,
            )

    def run_forever(self, poll_interval: float = 1.0) -> int:
        """
        Foreground mode: start, then block until a shutdown is requested by
        signal, by the shutdown signal file, or by Ctrl+C.

        :return: A process exit code.
        """
        event = self._shutdown_event
        if not self.start():
            # A start cancelled by a shutdown request is a clean exit.
            return 0 if event.is_set() else 1

        try:
            while not event.wait(poll_interval):
                if persistence.check_for_shutdown_signal(self.config.shutdown_signal_path):
                    break
                if self._state == SupervisorState.STOPPED:
                    break
        except KeyboardInterrupt:
            log.info("Supervisor interrupted by user.")
        finally:
            self.stop()
            self.config.shutdown_signal_path.unlink(missing_ok=True)
        return 0

    #* --- Supervision loop ---
    def _supervision_loop(self, shutdown_event: threading.Event) -> None:
        """Runs health checks every interval until the session's shutdown event is set."""
        log.debug("Health-check loop started.")
        try:
            while not shutdown_event.wait(self.config.health_check_interval):
                self._run_cycle(shutdown_event)
        except Exception as e:
            log.critical(f"Critical error in supervision loop: {e}", exc_info=True)
            self.stop()
        log.debug("Health-check loop exited.")

    def _run_cycle(self, shutdown_event: threading.Event) -> None:
        """One check cycle: verify the active tunnel and replace it if it failed."""
        handle = self._handle
        if handle is None:
            # The previous relaunch sequence was exhausted; try again.
            self._relaunch(shutdown_event)
            return

        verdict = self.health_checker.check(handle)
        self._record_verdict(verdict)
        if shutdown_event.is_set():
            return
        if verdict.healthy:
            log.debug(f"Health check passed for PID {handle.pid}: {verdict.describe()}")
            return

        log.warning(f"Health check failed for PID {handle.pid}: {verdict.describe()}")
        self._set_state(SupervisorState.UNHEALTHY)
        self._relaunch(shutdown_event)

    def _relaunch(self, shutdown_event: threading.Event) -> None:
        with self._lock:
            if shutdown_event.is_set():
                return
            self._set_state(SupervisorState.RELAUNCHING)
            if self._state != SupervisorState.RELAUNCHING:
                return
            old_handle, self._handle = self._handle, None
        if old_handle is not None:
            log.info(f"Terminating unhealthy tunnel process (PID {old_handle.pid}).")
            old_handle.terminate(self.config.graceful_shutdown_timeout)

        try:
            new_handle = self.launcher.launch(shutdown_event)
        except LaunchCancelled:
            log.info("Relaunch aborted by a shutdown request.")
            return
        except LaunchExhausted as e:
            self._last_error = str(e)
            log.error(f"Relaunch failed: {e} Retrying in {self.config.health_check_interval}s.")
            self._set_state(SupervisorState.UNHEALTHY)
            return

        with self._lock:
            adopt = not shutdown_event.is_set() and self._state == SupervisorState.RELAUNCHING
            if adopt:
                self._handle = new_handle
                self._last_error = None
                self._record_verdict(self.launcher.last_verdict)
                stats = self.stats.record_reconnect()
                self._set_state(SupervisorState.RUNNING)
        if not adopt:
            # stop() finished while this launch was still being verified.
            log.info(f"Discarding relaunched tunnel (PID {new_handle.pid}); the supervisor is shutting down.")
            new_handle.terminate(self.config.graceful_shutdown_timeout)
            return
        log.info(f"Tunnel reconnected (PID {new_handle.pid}). Reconnect count: {stats.reconnect_count}.")
