import time
import threading

import pytest

from tunnelguard.local.supervisor import persistence
from tunnelguard.local.supervisor import supervisor as supervisor_module
from tunnelguard.local.supervisor.backoff import BackoffPolicy
from tunnelguard.local.supervisor.errors import ConfigInvalid
from tunnelguard.local.supervisor.launcher import Launcher
from tunnelguard.local.supervisor.persistence import StatsTracker
from tunnelguard.local.supervisor.supervisor import SupervisorState, TunnelSupervisor
from tests.conftest import FakeEvent, FakeSpawner, ScriptedChecker, make_config

_real_supervision_loop = TunnelSupervisor._supervision_loop


@pytest.fixture(autouse=True)
def no_background_loop(monkeypatch):
    """Tests drive check cycles by hand instead of through the monitor thread."""
    monkeypatch.setattr(TunnelSupervisor, "_supervision_loop", lambda self, event: None)


@pytest.fixture
def background_loop(monkeypatch):
    monkeypatch.setattr(TunnelSupervisor, "_supervision_loop", _real_supervision_loop)


class Harness:
    def __init__(self, config, checker, event_factory=FakeEvent):
        self.config = config
        self.checker = checker
        self.spawner = FakeSpawner()
        self.events = []
        self._event_factory = event_factory
        launcher = Launcher(config, checker, BackoffPolicy(config.backoff_initial_delay, config.backoff_max_delay),
                            spawn=self.spawner)
        self.supervisor = TunnelSupervisor(
            config, launcher=launcher, health_checker=checker, event_factory=self._new_event
        )

    def _new_event(self):
        event = self._event_factory()
        self.events.append(event)
        return event

    @property
    def event(self):
        return self.events[-1]

    def live_handles(self):
        return [h for h in self.spawner.spawned if not h.terminated]


def test_start_runs_tunnel_and_initializes_stats(config):
    harness = Harness(config, ScriptedChecker())

    assert harness.supervisor.start()

    status = harness.supervisor.status()
    assert status.state == SupervisorState.RUNNING
    assert status.tunnel_pid == harness.spawner.spawned[0].pid
    assert status.stats.reconnect_count == 0
    record = persistence.read_pid_record(config.pid_path)
    assert record["state"] == "running"
    assert record["tunnel"] == status.tunnel_pid
    assert record["health"] == "healthy"


def test_start_while_running_is_ignored(config):
    harness = Harness(config, ScriptedChecker())
    harness.supervisor.start()

    assert harness.supervisor.start()
    assert len(harness.spawner.spawned) == 1


def test_failed_check_relaunches_and_counts_reconnect(config):
    harness = Harness(config, ScriptedChecker(results=[True, False, True]))
    harness.supervisor.start()
    first = harness.supervisor.active_handle

    harness.supervisor._run_cycle(harness.event)

    assert harness.supervisor.state == SupervisorState.RUNNING
    assert first.terminated
    assert harness.live_handles() == [harness.supervisor.active_handle]
    assert harness.supervisor.active_handle is not first
    assert harness.supervisor.status().stats.reconnect_count == 1
    assert StatsTracker(config.stats_path).read().reconnect_count == 1


def test_healthy_cycle_changes_nothing(config):
    harness = Harness(config, ScriptedChecker())
    harness.supervisor.start()
    handle = harness.supervisor.active_handle

    harness.supervisor._run_cycle(harness.event)

    assert harness.supervisor.active_handle is handle
    assert harness.supervisor.status().stats.reconnect_count == 0


def test_dead_process_is_replaced(config):
    harness = Harness(config, ScriptedChecker())
    harness.supervisor.start()
    harness.supervisor.active_handle.alive = False

    harness.supervisor._run_cycle(harness.event)

    assert harness.supervisor.state == SupervisorState.RUNNING
    assert len(harness.live_handles()) == 1
    assert harness.supervisor.status().stats.reconnect_count == 1


def test_checks_wait_one_interval_each(config):
    harness = Harness(config, ScriptedChecker())
    harness.supervisor.start()
    event = harness.event
    event.set_after_waits = len(event.waits) + 3

    _real_supervision_loop(harness.supervisor, event)

    # One settle wait during start, then three interval waits; the third one ends the loop.
    assert event.waits == [3, 30, 30, 30]
    assert len(harness.checker.checked) == 3
    harness.supervisor.stop()


def test_exhausted_relaunch_keeps_supervising(tmp_path):
    config = make_config(tmp_path, max_launch_attempts=2)
    harness = Harness(config, ScriptedChecker(results=[True], default=False))
    harness.supervisor.start()

    harness.supervisor._run_cycle(harness.event)

    status = harness.supervisor.status()
    assert status.state == SupervisorState.UNHEALTHY
    assert status.tunnel_pid is None
    assert "2 attempts" in status.last_error
    assert harness.live_handles() == []

    # The next interval starts a fresh launch sequence.
    harness.checker.default = True
    harness.supervisor._run_cycle(harness.event)

    status = harness.supervisor.status()
    assert status.state == SupervisorState.RUNNING
    assert status.last_error is None
    assert status.stats.reconnect_count == 1
    assert len(harness.live_handles()) == 1


def test_start_exhausted_ends_stopped(config):
    harness = Harness(config, ScriptedChecker(default=False))

    assert not harness.supervisor.start()

    status = harness.supervisor.status()
    assert status.state == SupervisorState.STOPPED
    assert "5 attempts" in status.last_error
    assert harness.live_handles() == []
    assert not config.pid_path.exists()


def test_stop_is_idempotent_and_cleans_up(config):
    harness = Harness(config, ScriptedChecker())
    harness.supervisor.start()
    handle = harness.supervisor.active_handle
    session_event = harness.event

    harness.supervisor.stop()
    harness.supervisor.stop()

    assert harness.supervisor.state == SupervisorState.STOPPED
    assert handle.terminate_calls == [config.graceful_shutdown_timeout]
    assert session_event.is_set()
    assert not harness.event.is_set()
    assert not config.pid_path.exists()
    assert not config.stats_path.exists()
    assert harness.supervisor.status().stats is None


def test_stop_before_start_is_a_noop(config):
    harness = Harness(config, ScriptedChecker())

    harness.supervisor.stop()

    assert harness.supervisor.state == SupervisorState.STOPPED


def test_restart_starts_a_fresh_session(config):
    harness = Harness(config, ScriptedChecker(results=[True, False, True]))
    harness.supervisor.start()
    harness.supervisor._run_cycle(harness.event)
    assert harness.supervisor.status().stats.reconnect_count == 1
    first_session = harness.event

    assert harness.supervisor.restart()

    assert harness.supervisor.status().stats.reconnect_count == 0
    assert len(harness.live_handles()) == 1
    assert first_session.is_set()
    assert harness.event is not first_session
    assert not harness.event.is_set()


def test_transitions_after_stop_request_are_dropped(config):
    harness = Harness(config, ScriptedChecker())
    harness.supervisor.start()
    harness.supervisor._set_state(SupervisorState.SHUTTING_DOWN)

    harness.supervisor._set_state(SupervisorState.RUNNING)

    assert harness.supervisor.state == SupervisorState.SHUTTING_DOWN


def test_invalid_config_is_never_retried(tmp_path):
    harness = Harness(make_config(tmp_path, remote_host=""), ScriptedChecker())

    with pytest.raises(ConfigInvalid) as exc_info:
        harness.supervisor.start()

    assert "REMOTE_HOST is not set" in exc_info.value.problems
    assert harness.spawner.calls == 0
    assert harness.supervisor.state == SupervisorState.STOPPED


def test_refuses_to_start_when_port_is_supervised_elsewhere(config, monkeypatch):
    persistence.write_pid_record(config.pid_path, 999999, None, "running")
    monkeypatch.setattr("tunnelguard.local.supervisor.startup.process_utils.pid_exists", lambda pid: True)
    harness = Harness(config, ScriptedChecker())

    assert not harness.supervisor.start()
    assert harness.spawner.calls == 0


def test_run_forever_stops_on_shutdown_signal_file(config):
    harness = Harness(config, ScriptedChecker())
    harness.supervisor.start = _start_then_signal(harness.supervisor, config)

    assert harness.supervisor.run_forever(poll_interval=0.01) == 0

    assert harness.supervisor.state == SupervisorState.STOPPED
    assert not config.shutdown_signal_path.exists()
    assert harness.live_handles() == []


def _start_then_signal(supervisor, config):
    original_start = supervisor.start

    def start():
        started = original_start()
        config.shutdown_signal_path.touch()
        return started

    return start


def test_transitions_out_of_stopped_only_open_a_session(config):
    harness = Harness(config, ScriptedChecker())

    harness.supervisor._set_state(SupervisorState.RUNNING)
    harness.supervisor._set_state(SupervisorState.RELAUNCHING)

    assert harness.supervisor.state == SupervisorState.STOPPED
    assert not config.pid_path.exists()


def test_shutdown_requested_before_start_cancels_it(config):
    harness = Harness(config, ScriptedChecker())
    harness.supervisor.request_shutdown()

    assert not harness.supervisor.start()
    assert harness.spawner.calls == 0
    assert harness.supervisor.state == SupervisorState.STOPPED
    assert not config.pid_path.exists()

    # The request was consumed; the next start opens a session normally.
    assert harness.supervisor.start()
    assert len(harness.live_handles()) == 1


def test_run_forever_exits_cleanly_when_stopped_before_start(config):
    harness = Harness(config, ScriptedChecker())
    harness.supervisor.request_shutdown()

    assert harness.supervisor.run_forever(poll_interval=0.01) == 0
    assert harness.spawner.calls == 0


def test_relaunch_after_stop_is_discarded(config):
    harness = Harness(config, ScriptedChecker(results=[True, True]))
    harness.supervisor.start()
    event = harness.event
    harness.supervisor.stop()

    harness.supervisor._relaunch(event)

    assert harness.supervisor.state == SupervisorState.STOPPED
    assert harness.live_handles() == []
    assert harness.spawner.calls == 1


class GatedChecker(ScriptedChecker):
    """Holds the `gate_on`-th check until `release` is set."""

    def __init__(self, results, gate_on):
        super().__init__(results)
        self.gate_on = gate_on
        self.entered = threading.Event()
        self.release = threading.Event()

    def check(self, handle):
        verdict = super().check(handle)
        if len(self.checked) == self.gate_on:
            self.entered.set()
            self.release.wait(5)
        return verdict


def test_stop_interrupts_interval_wait_promptly(tmp_path, background_loop):
    config = make_config(tmp_path, settle_seconds=0)
    harness = Harness(config, ScriptedChecker(), event_factory=threading.Event)
    assert harness.supervisor.start()
    loop_thread = harness.supervisor._monitor_thread

    started = time.monotonic()
    harness.supervisor.stop()

    assert time.monotonic() - started < 2
    assert not loop_thread.is_alive()
    assert harness.supervisor.state == SupervisorState.STOPPED
    # Only the launch verification ran; the 30s interval never elapsed.
    assert len(harness.checker.checked) == 1


def test_relaunch_outliving_stop_does_not_revive_session(tmp_path, background_loop, monkeypatch):
    monkeypatch.setattr(supervisor_module, "LOOP_EXIT_MARGIN", 0)
    config = make_config(
        tmp_path, settle_seconds=0, health_check_interval=0.05, min_health_check_interval=0.01,
        probe_timeout=0.05, graceful_shutdown_timeout=0.05,
    )
    # Launch check passes, the first periodic check fails, the relaunch check hangs.
    checker = GatedChecker(results=[True, False, True], gate_on=3)
    harness = Harness(config, checker, event_factory=threading.Event)
    assert harness.supervisor.start()
    loop_thread = harness.supervisor._monitor_thread
    assert checker.entered.wait(5)

    harness.supervisor.stop()
    assert loop_thread.is_alive()
    checker.release.set()
    loop_thread.join(5)

    assert not loop_thread.is_alive()
    assert harness.supervisor.state == SupervisorState.STOPPED
    assert harness.supervisor.active_handle is None
    assert harness.live_handles() == []
    assert not config.pid_path.exists()
    assert not config.stats_path.exists()


def test_stop_join_covers_connect_and_read_timeouts(tmp_path):
    config = make_config(tmp_path, probe_timeout=10, graceful_shutdown_timeout=4)

    assert supervisor_module.loop_join_timeout(config) == 2 * 10 + 4 + supervisor_module.LOOP_EXIT_MARGIN
