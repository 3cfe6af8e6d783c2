from types import SimpleNamespace
from unittest.mock import MagicMock

import psutil
import pytest
import requests

from tunnelguard.local.supervisor import health
from tunnelguard.local.supervisor.health import HealthChecker, HealthVerdict, LAYER_PORT, LAYER_PROBE, LAYER_PROCESS
from tests.conftest import FakeHandle, make_config


def _listening(port, pid):
    return SimpleNamespace(status=psutil.CONN_LISTEN, laddr=SimpleNamespace(ip="127.0.0.1", port=port), pid=pid)


@pytest.fixture
def probe_checker(tmp_path):
    checker = HealthChecker(make_config(tmp_path, probe_enabled=True))
    # Pretend SOCKS support is installed regardless of the test environment.
    checker._probe_unavailable_reason = None
    return checker


def test_dead_process_short_circuits(monkeypatch, config):
    net_connections = MagicMock()
    get = MagicMock()
    monkeypatch.setattr(health.psutil, "net_connections", net_connections)
    monkeypatch.setattr(health.requests, "get", get)

    verdict = HealthChecker(config).check(FakeHandle(alive=False))

    assert not verdict.healthy
    assert verdict.failed_layer == LAYER_PROCESS
    net_connections.assert_not_called()
    get.assert_not_called()


def test_port_not_listening_fails_before_probe(monkeypatch, probe_checker):
    handle = FakeHandle()
    get = MagicMock()
    monkeypatch.setattr(health.psutil, "net_connections", lambda kind: [_listening(8080, handle.pid)])
    monkeypatch.setattr(health.requests, "get", get)

    verdict = probe_checker.check(handle)

    assert verdict.failed_layer == LAYER_PORT
    assert verdict.port_listening is False
    get.assert_not_called()


def test_port_owned_by_another_process_does_not_count(monkeypatch, tmp_path):
    handle = FakeHandle()
    monkeypatch.setattr(health.psutil, "net_connections", lambda kind: [_listening(1337, handle.pid + 1)])

    verdict = HealthChecker(make_config(tmp_path, probe_enabled=False)).check(handle)

    assert verdict.failed_layer == LAYER_PORT


def test_socket_inspection_denied_is_degraded_not_failed(monkeypatch, tmp_path):
    monkeypatch.setattr(health.psutil, "net_connections", MagicMock(side_effect=psutil.AccessDenied()))

    verdict = HealthChecker(make_config(tmp_path, probe_enabled=False)).check(FakeHandle())

    assert verdict.healthy
    assert verdict.degraded
    assert verdict.skipped_layers == (LAYER_PORT, LAYER_PROBE)
    assert verdict.port_listening is None
    assert "degraded" in verdict.describe()


def test_probe_success_goes_through_socks_proxy(monkeypatch, probe_checker):
    handle = FakeHandle()
    get = MagicMock(return_value=SimpleNamespace(status_code=204))
    monkeypatch.setattr(health.psutil, "net_connections", lambda kind: [_listening(1337, handle.pid)])
    monkeypatch.setattr(health.requests, "get", get)

    verdict = probe_checker.check(handle)

    assert verdict.healthy
    assert not verdict.degraded
    assert verdict.probe_ok is True
    _, kwargs = get.call_args
    assert kwargs["proxies"]["http"] == "socks5h://127.0.0.1:1337"
    assert kwargs["timeout"] == 10


def test_probe_connection_error_fails_check(monkeypatch, probe_checker):
    handle = FakeHandle()
    monkeypatch.setattr(health.psutil, "net_connections", lambda kind: [_listening(1337, None)])
    monkeypatch.setattr(health.requests, "get", MagicMock(side_effect=requests.ConnectionError("refused")))

    verdict = probe_checker.check(handle)

    assert not verdict.healthy
    assert verdict.failed_layer == LAYER_PROBE
    assert verdict.port_listening is True


def test_probe_server_error_fails_check(monkeypatch, probe_checker):
    handle = FakeHandle()
    monkeypatch.setattr(health.psutil, "net_connections", lambda kind: [_listening(1337, handle.pid)])
    monkeypatch.setattr(health.requests, "get", MagicMock(return_value=SimpleNamespace(status_code=503)))

    assert probe_checker.check(handle).failed_layer == LAYER_PROBE


def test_missing_socks_support_skips_probe(monkeypatch, probe_checker):
    handle = FakeHandle()
    monkeypatch.setattr(health.psutil, "net_connections", lambda kind: [_listening(1337, handle.pid)])
    monkeypatch.setattr(
        health.requests, "get", MagicMock(side_effect=requests.exceptions.InvalidSchema("Missing dependencies for SOCKS support."))
    )

    verdict = probe_checker.check(handle)

    assert verdict.healthy
    assert verdict.skipped_layers == (LAYER_PROBE,)


def test_disabled_probe_is_reported_as_skipped(monkeypatch, tmp_path):
    checker = HealthChecker(make_config(tmp_path, probe_enabled=False))
    get = MagicMock()
    monkeypatch.setattr(health.requests, "get", get)

    with pytest.raises(health.ProbeUnavailable):
        checker._check_probe()
    get.assert_not_called()


def test_check_never_terminates_the_handle(monkeypatch, tmp_path):
    handle = FakeHandle()
    monkeypatch.setattr(health.psutil, "net_connections", lambda kind: [])

    HealthChecker(make_config(tmp_path, probe_enabled=False)).check(handle)

    assert not handle.terminated


def test_verdict_describe_mentions_failed_layer():
    verdict = HealthVerdict(process_alive=True, port_listening=False, failed_layer=LAYER_PORT, detail="port 1337 is not listening")

    assert verdict.describe() == "unhealthy (port-listening failed: port 1337 is not listening)"
