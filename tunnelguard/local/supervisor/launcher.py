import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional
from .backoff import BackoffPolicy
from .config_utils import TunnelConfig
from .health import HealthChecker, HealthVerdict
from .errors import LaunchCancelled, LaunchExhausted
from .process_utils import ProcessHandle, spawn_tunnel

log = logging.getLogger(__name__)


@dataclass
class RetryState:
    """Bookkeeping for one launch sequence. Never shared between sequences."""
    max_attempts: int
    attempt: int = 1
    total_wait: float = 0.0

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts


class Launcher:
    """
    Starts the tunnel and only hands it out once it has passed a health check.

    Each call to `launch()` gets a fresh retry budget of `max_launch_attempts`.
    A spawned process that is not returned to the caller is always terminated
    before `launch()` moves on, returns or raises.
    """

    def __init__(self, config: TunnelConfig, health_checker: HealthChecker, backoff: BackoffPolicy,
                 spawn: Callable[[TunnelConfig], ProcessHandle] = spawn_tunnel):
        self.config = config
        self.health_checker = health_checker
        self.backoff = backoff
        self._spawn = spawn
        self.last_verdict: Optional[HealthVerdict] = None

    def launch(self, shutdown_event: Optional[threading.Event] = None) -> ProcessHandle:
        """
        Runs one bounded launch sequence.

        :param shutdown_event: Set to abort the sequence; interrupts the settle and backoff waits.
        :return: A handle whose first health check passed.
        :raises LaunchExhausted: If every attempt ended unhealthy.
        :raises LaunchCancelled: If `shutdown_event` was set during the sequence.
        """
        shutdown_event = shutdown_event or threading.Event()
        retry = RetryState(max_attempts=self.config.max_launch_attempts)

        while True:
            if shutdown_event.is_set():
                raise LaunchCancelled("Shutdown requested before launch attempt.")

            handle = self._attempt(retry, shutdown_event)
            if handle is not None:
                return handle

            if retry.exhausted:
                break
            delay = self.backoff.delay(retry.attempt)
            log.info(f"Retrying tunnel launch in {delay:.0f}s (after attempt {retry.attempt}/{retry.max_attempts}).")
            if shutdown_event.wait(delay):
                raise LaunchCancelled("Shutdown requested during launch backoff.")
            retry.total_wait += delay
            retry.attempt += 1

        log.error(
            f"Tunnel launch exhausted after {retry.attempt} attempts "
            f"({retry.total_wait:.0f}s in backoff)."
        )
        raise LaunchExhausted(retry.attempt, retry.total_wait)

    def _attempt(self, retry: RetryState, shutdown_event: threading.Event) -> Optional[ProcessHandle]:
        """Spawns and verifies one tunnel. Returns the handle if healthy, else None."""
        log.info(f"Launch attempt {retry.attempt}/{retry.max_attempts}: starting tunnel to "
                 f"{self.config.target}:{self.config.remote_port} on "
                 f"{self.config.bind_ip}:{self.config.proxy_port}")
        try:
            handle = self._spawn(self.config)
        except OSError as e:
            log.error(f"Launch attempt {retry.attempt}/{retry.max_attempts}: could not start tunnel client: {e}")
            return None

        healthy = False
        try:
            if shutdown_event.wait(self.config.settle_seconds):
                raise LaunchCancelled("Shutdown requested while the tunnel was settling.")
            verdict = self.health_checker.check(handle)
            self.last_verdict = verdict
            healthy = verdict.healthy
        finally:
            if not healthy:
                handle.terminate(self.config.graceful_shutdown_timeout)

        if not healthy:
            log.warning(f"Launch attempt {retry.attempt}/{retry.max_attempts} failed: tunnel is {verdict.describe()}")
            return None
        log.info(f"Tunnel is up (PID {handle.pid}), {verdict.describe()}.")
        return handle
