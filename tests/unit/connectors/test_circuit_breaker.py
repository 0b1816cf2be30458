import pytest

from metasync.connectors.meta.circuit_breaker import CircuitBreaker
from metasync.core.errors import CircuitOpenError, QuotaScope

COOLDOWNS = {
    QuotaScope.ACCOUNT: 900.0,
    QuotaScope.APPLICATION: 300.0,
    QuotaScope.TRANSIENT: 300.0,
}


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(cooldowns=COOLDOWNS, clock=clock)


def test_closed_breaker_allows_calls(breaker):
    breaker.before_call()
    assert breaker.is_open is False


def test_account_quota_rejects_until_cooldown_elapses(breaker, clock):
    breaker.trip(QuotaScope.ACCOUNT)

    with pytest.raises(CircuitOpenError) as exc:
        breaker.before_call()
    assert exc.value.retry_after == pytest.approx(900)

    clock.advance(899)
    with pytest.raises(CircuitOpenError):
        breaker.before_call()

    clock.advance(1)
    breaker.before_call()
    assert breaker.is_open is False


def test_cooldown_depends_on_scope(breaker, clock):
    assert breaker.trip(QuotaScope.APPLICATION) == 300
    clock.advance(300)
    breaker.before_call()


def test_shorter_trip_does_not_shorten_open_window(breaker, clock):
    breaker.trip(QuotaScope.ACCOUNT)
    clock.advance(10)
    breaker.trip(QuotaScope.TRANSIENT)

    clock.advance(400)
    with pytest.raises(CircuitOpenError):
        breaker.before_call()


def test_success_resets_consecutive_errors(breaker, clock):
    breaker.trip(QuotaScope.TRANSIENT)
    breaker.trip(QuotaScope.TRANSIENT)
    assert breaker.status()["consecutive_quota_errors"] == 2

    clock.advance(300)
    breaker.before_call()
    breaker.record_success()

    status = breaker.status()
    assert status["consecutive_quota_errors"] == 0
    assert status["is_open"] is False


def test_status_while_open(breaker, clock):
    breaker.trip(QuotaScope.ACCOUNT)
    clock.advance(100)

    status = breaker.status()

    assert status["is_open"] is True
    assert status["retry_after_seconds"] == pytest.approx(800)
    assert status["last_scope"] == "account"


def test_stale_success_keeps_newer_trip_open(breaker, clock):
    trips = breaker.before_call()
    breaker.trip(QuotaScope.ACCOUNT)

    breaker.record_success(trips)

    assert breaker.is_open is True
    with pytest.raises(CircuitOpenError):
        breaker.before_call()

    clock.advance(900)
    breaker.record_success(breaker.before_call())
    assert breaker.status()["consecutive_quota_errors"] == 0
