"""
The Supervisor package.
Keeps a single SSH SOCKS5 tunnel process alive.

This package contains the TunnelSupervisor state machine and its helper
modules: layered health checks, exponential backoff, the bounded launcher,
persisted PID/stats records and graceful process termination.
"""
from .errors import (
    TunnelGuardError, ConfigInvalid, LaunchExhausted, LaunchCancelled,
    ProbeUnavailable, ProcessTerminationFailed, StatsCorrupt,
)
from .config_utils import TunnelConfig, validate_config
from .backoff import BackoffPolicy
from .health import HealthChecker, HealthVerdict
from .launcher import Launcher, RetryState
from .persistence import Stats, StatsTracker
from .process_utils import ProcessHandle, spawn_tunnel
from .supervisor import TunnelSupervisor, SupervisorState, SupervisorStatus

__all__ = [
    'TunnelSupervisor', 'SupervisorState', 'SupervisorStatus',
    'TunnelConfig', 'validate_config', 'BackoffPolicy', 'HealthChecker', 'HealthVerdict',
    'Launcher', 'RetryState', 'Stats', 'StatsTracker', 'ProcessHandle', 'spawn_tunnel',
    'TunnelGuardError', 'ConfigInvalid', 'LaunchExhausted', 'LaunchCancelled',
    'ProbeUnavailable', 'ProcessTerminationFailed', 'StatsCorrupt',
]
