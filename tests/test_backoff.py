import pytest

from tunnelguard.local.supervisor import backoff
from tunnelguard.local.supervisor.backoff import BackoffPolicy


def test_delay_doubles_until_capped():
    policy = BackoffPolicy(initial_delay=5, max_delay=300)

    delays = [policy.delay(n) for n in range(1, 9)]

    assert delays == [5, 10, 20, 40, 80, 160, 300, 300]


def test_delay_is_capped_for_huge_attempt_numbers():
    policy = BackoffPolicy(initial_delay=5, max_delay=300)

    assert policy.delay(10_000) == 300


@pytest.mark.parametrize("attempt", [0, -1])
def test_delay_rejects_attempts_below_one(attempt):
    with pytest.raises(ValueError):
        BackoffPolicy(5, 300).delay(attempt)


def test_constructor_rejects_inverted_bounds():
    with pytest.raises(ValueError):
        BackoffPolicy(initial_delay=10, max_delay=5)
    with pytest.raises(ValueError):
        BackoffPolicy(initial_delay=0, max_delay=5)


def test_jitter_spreads_but_never_exceeds_max(monkeypatch):
    policy = BackoffPolicy(initial_delay=5, max_delay=300, jitter=0.2)

    monkeypatch.setattr(backoff.random, "uniform", lambda a, b: b)
    assert policy.delay(2) == pytest.approx(12.0)
    assert policy.delay(7) == 300

    monkeypatch.setattr(backoff.random, "uniform", lambda a, b: a)
    assert policy.delay(2) == pytest.approx(8.0)


def test_zero_jitter_is_deterministic(monkeypatch):
    def _fail(a, b):
        raise AssertionError("random.uniform should not be called without jitter")

    monkeypatch.setattr(backoff.random, "uniform", _fail)

    assert BackoffPolicy(5, 300).delay(3) == 20
