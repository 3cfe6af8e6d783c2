import shlex
import shutil
import logging
import ipaddress
import subprocess
from pathlib import Path
from typing import Any, List
from dataclasses import dataclass, field, replace
import tunnelguard.settings as default_settings
from .errors import ConfigInvalid

log = logging.getLogger(__name__)

_WILDCARD_BIND_ADDRESSES = {"", "0.0.0.0", "::", "*"}


@dataclass(frozen=True)
class TunnelConfig:
    """Immutable snapshot of everything the supervision core needs."""
    remote_user: str
    remote_host: str
    proxy_port: int
    state_dir: Path
    remote_port: int = 22
    bind_ip: str = "127.0.0.1"
    ssh_binary: str = "ssh"
    ssh_options: List[str] = field(default_factory=list)
    probe_enabled: bool = True
    probe_url: str = default_settings.PROBE_URL
    probe_timeout: float = 10
    health_check_interval: float = 30
    min_health_check_interval: float = 10
    max_launch_attempts: int = 5
    settle_seconds: float = 3
    backoff_initial_delay: float = 5
    backoff_max_delay: float = 300
    backoff_jitter: float = 0.0
    graceful_shutdown_timeout: float = 10

    @classmethod
    def from_settings(cls, settings: Any) -> "TunnelConfig":
        """
        Builds a config snapshot from the settings singleton.

        :param settings: `app_globals` or any object exposing the settings attributes.
        :return: A new TunnelConfig.
        """
        return cls(
            remote_user=settings.REMOTE_USER,
            remote_host=settings.REMOTE_HOST,
            remote_port=settings.REMOTE_PORT,
            proxy_port=settings.PROXY_PORT,
            bind_ip=settings.LOCAL_BIND_IP,
            state_dir=Path(settings.BIN_DIR),
            ssh_binary=settings.SSH_BINARY,
            ssh_options=shlex.split(settings.SSH_OPTIONS),
            probe_enabled=settings.PROBE_ENABLED,
            probe_url=settings.PROBE_URL,
            probe_timeout=settings.PROBE_TIMEOUT,
            health_check_interval=settings.HEALTH_CHECK_INTERVAL,
            min_health_check_interval=settings.MIN_HEALTH_CHECK_INTERVAL,
            max_launch_attempts=settings.MAX_LAUNCH_ATTEMPTS,
            settle_seconds=settings.LAUNCH_SETTLE_SECONDS,
            backoff_initial_delay=settings.BACKOFF_INITIAL_DELAY,
            backoff_max_delay=settings.BACKOFF_MAX_DELAY,
            backoff_jitter=settings.BACKOFF_JITTER,
            graceful_shutdown_timeout=settings.GRACEFUL_SHUTDOWN_TIMEOUT,
        )

    @property
    def pid_path(self) -> Path:
        return self.state_dir / default_settings.PID_FILE_TEMPLATE.format(port=self.proxy_port)

    @property
    def stats_path(self) -> Path:
        return self.state_dir / default_settings.STATS_FILE_TEMPLATE.format(port=self.proxy_port)

    @property
    def shutdown_signal_path(self) -> Path:
        return self.state_dir / default_settings.SHUTDOWN_SIGNAL_TEMPLATE.format(port=self.proxy_port)

    @property
    def probe_host(self) -> str:
        """The address a local client uses to reach the proxy."""
        return "127.0.0.1" if self.bind_ip in _WILDCARD_BIND_ADDRESSES else self.bind_ip

    @property
    def proxy_url(self) -> str:
        # socks5h: hostnames are resolved on the remote side of the tunnel.
        return f"socks5h://{self.probe_host}:{self.proxy_port}"

    @property
    def target(self) -> str:
        return f"{self.remote_user}@{self.remote_host}"


def _is_loopback(address: str) -> bool:
    if address == "localhost":
        return True
    try:
        return ipaddress.ip_address(address).is_loopback
    except ValueError:
        return False


def validate_config(config: TunnelConfig) -> TunnelConfig:
    """
    Validates the connection parameters and enforces the check interval floor.

    :param config: The config to validate.
    :return: The config, with the health-check interval clamped if needed.
    :raises ConfigInvalid: If any required parameter is missing or malformed.
    """
    problems = []
    if not config.remote_user:
        problems.append("REMOTE_USER is not set")
    if not config.remote_host:
        problems.append("REMOTE_HOST is not set")
    elif config.remote_host == default_settings.PLACEHOLDER_REMOTE_HOST:
        problems.append(f"REMOTE_HOST is still the placeholder '{config.remote_host}'")
    if not isinstance(config.proxy_port, int) or not 1024 <= config.proxy_port <= 65535:
        problems.append("PROXY_PORT must be a number between 1024-65535")
    if not isinstance(config.remote_port, int) or not 1 <= config.remote_port <= 65535:
        problems.append("REMOTE_PORT must be a number between 1-65535")
    if config.max_launch_attempts < 1:
        problems.append("MAX_LAUNCH_ATTEMPTS must be at least 1")
    if config.backoff_initial_delay <= 0 or config.backoff_max_delay < config.backoff_initial_delay:
        problems.append("BACKOFF delays must be positive with BACKOFF_MAX_DELAY >= BACKOFF_INITIAL_DELAY")
    if not 0 <= config.backoff_jitter < 1:
        problems.append("BACKOFF_JITTER must be in [0, 1)")
    if config.probe_timeout <= 0 or config.graceful_shutdown_timeout <= 0 or config.settle_seconds < 0:
        problems.append("Timeouts must be positive")
    if problems:
        raise ConfigInvalid(problems)

    if config.health_check_interval < config.min_health_check_interval:
        log.warning(
            f"HEALTH_CHECK_INTERVAL={config.health_check_interval}s is below the minimum; "
            f"using {config.min_health_check_interval}s."
        )
        config = replace(config, health_check_interval=config.min_health_check_interval)
    return config


def check_prerequisites(config: TunnelConfig) -> None:
    """
    Checks that the SSH client binary is available.

    :raises ConfigInvalid: If the binary cannot be found on PATH.
    """
    ssh_path = shutil.which(config.ssh_binary)
    if not ssh_path:
        raise ConfigInvalid([f"SSH client '{config.ssh_binary}' not found. Please install openssh-client"])
    log.debug(f"Prerequisite OK: SSH client found at '{ssh_path}'")


def build_ssh_command(config: TunnelConfig) -> List[str]:
    """Returns the argument vector of the SOCKS5 tunnel client."""
    args = [config.ssh_binary]
    if not _is_loopback(config.bind_ip):
        args.append("-g")
    args += [
        "-D", f"{config.bind_ip}:{config.proxy_port}",
        "-p", str(config.remote_port),
        "-N", "-C",
        *config.ssh_options,
        *default_settings.SSH_FORCED_OPTIONS,
        config.target,
    ]
    return args


def verify_ssh_login(config: TunnelConfig, timeout: float = 20) -> bool:
    """
    Tests key-based SSH authentication against the remote host.

    :return: True if a non-interactive login succeeds.
    """
    cmd = [
        config.ssh_binary, *config.ssh_options, "-p", str(config.remote_port),
        "-o", "BatchMode=yes", "-o", "PasswordAuthentication=no",
        config.target, "exit",
    ]
    log.info(f"Testing SSH connection to {config.target}:{config.remote_port}...")
    try:
        result = subprocess.run(cmd, capture_output=True, timeout=timeout, check=False)
    except (OSError, subprocess.TimeoutExpired) as e:
        log.warning(f"SSH connection test could not complete: {e}")
        return False
    if result.returncode == 0:
        log.info("SSH connection successful (key-based authentication).")
        return True
    log.warning(
        f"SSH key-based authentication failed (exit code {result.returncode}): "
        f"{result.stderr.decode('utf-8', errors='replace').strip()}"
    )
    return False
