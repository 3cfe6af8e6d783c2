import time
import psutil
import logging
import requests
import importlib.util
from typing import Optional, Tuple
from dataclasses import dataclass, field
from .errors import ProbeUnavailable
from .config_utils import TunnelConfig

log = logging.getLogger(__name__)

LAYER_PROCESS = "process-alive"
LAYER_PORT = "port-listening"
LAYER_PROBE = "functional-probe"


@dataclass(frozen=True)
class HealthVerdict:
    """
    Result of one layered health check. A layer value of None means the
    layer was skipped because its capability is unavailable on this host.
    """
    process_alive: bool
    port_listening: Optional[bool] = None
    probe_ok: Optional[bool] = None
    failed_layer: Optional[str] = None
    skipped_layers: Tuple[str, ...] = ()
    detail: str = ""
    checked_at: float = field(default_factory=time.time)

    @property
    def healthy(self) -> bool:
        return self.process_alive and self.failed_layer is None

    @property
    def degraded(self) -> bool:
        """True if the verdict was reached with at least one layer skipped."""
        return bool(self.skipped_layers)

    def describe(self) -> str:
        if self.healthy:
            text = "healthy"
        else:
            text = f"unhealthy ({self.failed_layer} failed{': ' + self.detail if self.detail else ''})"
        if self.degraded:
            text += f" [degraded: {', '.join(self.skipped_layers)} skipped]"
        return text


class HealthChecker:
    """
    Layered liveness test for a tunnel process:

    1. process-alive (mandatory): the OS process is running.
    2. port-listening: the proxy port is bound and listening. Skipped when the
       host does not let us inspect sockets.
    3. functional-probe (best effort): an HTTP request routed through the
       SOCKS proxy succeeds within the probe timeout. Skipped when SOCKS
       support for requests is not installed or the probe is disabled.

    Layers run in order and the first failure ends the check. Checks are
    read-only: they never touch the handle or supervisor state.
    """

    def __init__(self, config: TunnelConfig):
        self.config = config
        self._probe_unavailable_reason = self._detect_probe_capability()

    def _detect_probe_capability(self) -> Optional[str]:
        if not self.config.probe_enabled:
            return "disabled by configuration"
        if not self.config.probe_url:
            return "no probe URL configured"
        if importlib.util.find_spec("socks") is None:
            return "SOCKS support for requests (PySocks) is not installed"
        return None

    def check(self, handle) -> HealthVerdict:
        """
        Runs the health layers against `handle`.

        :param handle: The ProcessHandle to verify.
        :return: A fresh HealthVerdict.
        """
        if not handle.is_alive():
            return HealthVerdict(process_alive=False, failed_layer=LAYER_PROCESS,
                                 detail=f"PID {handle.pid} is not running")

        skipped = []
        try:
            port_ok = self._check_port(handle)
        except ProbeUnavailable as e:
            log.debug(str(e))
            port_ok = None
            skipped.append(LAYER_PORT)
        if port_ok is False:
            return HealthVerdict(process_alive=True, port_listening=False, failed_layer=LAYER_PORT,
                                 skipped_layers=tuple(skipped),
                                 detail=f"port {self.config.proxy_port} is not listening")

        try:
            probe_ok = self._check_probe()
        except ProbeUnavailable as e:
            log.debug(str(e))
            probe_ok = None
            skipped.append(LAYER_PROBE)
        if probe_ok is False:
            return HealthVerdict(process_alive=True, port_listening=port_ok, probe_ok=False,
                                 failed_layer=LAYER_PROBE, skipped_layers=tuple(skipped),
                                 detail=f"request to {self.config.probe_url} through the tunnel failed")

        return HealthVerdict(process_alive=True, port_listening=port_ok, probe_ok=probe_ok,
                             skipped_layers=tuple(skipped))

    def _check_port(self, handle) -> bool:
        """
        Checks whether the proxy port is in LISTEN state, owned by the tunnel
        process when the OS reports owners.

        :raises ProbeUnavailable: If socket inspection is not permitted here.
        """
        try:
            connections = psutil.net_connections(kind="tcp")
        except (psutil.AccessDenied, NotImplementedError) as e:
            raise ProbeUnavailable(LAYER_PORT, f"socket inspection not permitted ({e.__class__.__name__})")

        for conn in connections:
            if conn.status != psutil.CONN_LISTEN or not conn.laddr:
                continue
            if conn.laddr.port == self.config.proxy_port and conn.pid in (None, handle.pid):
                return True
        return False

    def _check_probe(self) -> bool:
        """
        Sends one HTTP request through the tunnel.

        :raises ProbeUnavailable: If the probe cannot run on this host.
        """
        if self._probe_unavailable_reason:
            raise ProbeUnavailable(LAYER_PROBE, self._probe_unavailable_reason)

        proxies = {"http": self.config.proxy_url, "https": self.config.proxy_url}
        try:
            response = requests.get(
                self.config.probe_url, proxies=proxies,
                timeout=self.config.probe_timeout, allow_redirects=False
            )
        except requests.exceptions.InvalidSchema as e:
            raise ProbeUnavailable(LAYER_PROBE, str(e))
        except requests.RequestException as e:
            log.debug(f"Functional probe failed: {e}")
            return False
        if response.status_code >= 500:
            log.debug(f"Functional probe got HTTP {response.status_code} from {self.config.probe_url}")
            return False
        return True
