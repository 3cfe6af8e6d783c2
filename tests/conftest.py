"""Root pytest configuration and shared fixtures."""

import os
import itertools
import tempfile

# Keep overrides, logs and state files out of the real home directory.
os.environ.setdefault("TUNNELGUARD_HOME", tempfile.mkdtemp(prefix="tunnelguard-tests-"))

import pytest

from tunnelguard.local.supervisor.config_utils import TunnelConfig
from tunnelguard.local.supervisor.health import HealthVerdict, LAYER_PORT, LAYER_PROCESS


class FakeEvent:
    """
    threading.Event stand-in that never sleeps. Every wait is recorded; the
    event becomes set once `set_after_waits` waits have happened.
    """

    def __init__(self, set_after_waits=None):
        self.waits = []
        self.set_after_waits = set_after_waits
        self._flag = False

    def wait(self, timeout=None):
        self.waits.append(timeout)
        if self.set_after_waits is not None and len(self.waits) >= self.set_after_waits:
            self._flag = True
        return self._flag

    def set(self):
        self._flag = True

    def clear(self):
        self._flag = False

    def is_set(self):
        return self._flag


class FakeHandle:
    _pids = itertools.count(40000)

    def __init__(self, alive=True):
        self.pid = next(self._pids)
        self.alive = alive
        self.terminate_calls = []

    @property
    def terminated(self):
        return bool(self.terminate_calls)

    def is_alive(self):
        return self.alive and not self.terminated

    def terminate(self, grace_period):
        self.terminate_calls.append(grace_period)


class FakeSpawner:
    """Callable replacing spawn_tunnel. Items in `failures` are raised instead of spawning."""

    def __init__(self, failures=()):
        self.failures = list(failures)
        self.spawned = []
        self.calls = 0

    def __call__(self, config):
        self.calls += 1
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure
        handle = FakeHandle()
        self.spawned.append(handle)
        return handle


class ScriptedChecker:
    """HealthChecker stand-in returning scripted results, then `default`."""

    def __init__(self, results=(), default=True):
        self.results = list(results)
        self.default = default
        self.checked = []

    def check(self, handle):
        self.checked.append(handle)
        if not handle.is_alive():
            return HealthVerdict(process_alive=False, failed_layer=LAYER_PROCESS)
        ok = self.results.pop(0) if self.results else self.default
        if ok:
            return HealthVerdict(process_alive=True, port_listening=True, probe_ok=True)
        return HealthVerdict(process_alive=True, port_listening=False, failed_layer=LAYER_PORT)


def make_config(state_dir, **overrides) -> TunnelConfig:
    values = dict(
        remote_user="alice",
        remote_host="tunnel.example.org",
        proxy_port=1337,
        state_dir=state_dir,
    )
    values.update(overrides)
    return TunnelConfig(**values)


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)
