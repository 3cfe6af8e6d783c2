"""Exception types raised by the supervision core."""

from pathlib import Path
from typing import List, Optional


class TunnelGuardError(Exception):
    """Base class for all TunnelGuard errors."""


class ConfigInvalid(TunnelGuardError):
    """Required connection parameters are missing or malformed. Never retried."""

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__("Invalid configuration: " + "; ".join(self.problems))


class LaunchExhausted(TunnelGuardError):
    """Every launch attempt of one launch sequence ended with an unhealthy tunnel."""

    def __init__(self, attempts: int, total_wait: float):
        self.attempts = attempts
        self.total_wait = total_wait
        super().__init__(
            f"Tunnel did not come up healthy after {attempts} attempts "
            f"({total_wait:.0f}s spent in backoff)."
        )


class LaunchCancelled(TunnelGuardError):
    """A launch sequence was interrupted by a shutdown request."""


class ProbeUnavailable(TunnelGuardError):
    """An optional health-check capability is missing on this host."""

    def __init__(self, layer: str, reason: str):
        self.layer = layer
        self.reason = reason
        super().__init__(f"Health layer '{layer}' unavailable: {reason}")


class ProcessTerminationFailed(TunnelGuardError):
    """A process ignored the graceful stop request for the whole grace period."""

    def __init__(self, pid: int, grace_period: float):
        self.pid = pid
        self.grace_period = grace_period
        super().__init__(f"Process {pid} did not exit within {grace_period}s of SIGTERM.")


class StatsCorrupt(TunnelGuardError):
    """The persisted stats record cannot be parsed."""

    def __init__(self, path: Path, detail: Optional[str] = None):
        self.path = path
        super().__init__(f"Stats record '{path}' is unreadable" + (f": {detail}." if detail else "."))
