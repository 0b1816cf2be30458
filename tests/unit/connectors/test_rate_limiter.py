import threading
import time

import pytest

from metasync.connectors.meta.rate_limiter import WINDOW_SECONDS, RateLimiter
from metasync.core.errors import ConcurrencyTimeoutError, DeadlineExceededError


def _limiter(clock, **overrides):
    kwargs = dict(
        requests_per_hour=10,
        safety_margin=0.8,
        min_interval=0,
        max_concurrency=3,
        acquire_timeout=0.05,
        max_quota_wait=WINDOW_SECONDS,
        clock=clock,
        sleep=clock.sleep,
    )
    kwargs.update(overrides)
    return RateLimiter(**kwargs)


def _call(limiter, clock):
    limiter.acquire()
    at = clock()
    limiter.release()
    return at


class TestSafeLimit:
    def test_applies_safety_margin(self, clock):
        assert _limiter(clock, requests_per_hour=100).safe_limit == 80
        assert _limiter(clock, requests_per_hour=10).safe_limit == 8

    def test_floors_and_never_drops_below_one(self, clock):
        assert _limiter(clock, requests_per_hour=7).safe_limit == 5
        assert _limiter(clock, requests_per_hour=1).safe_limit == 1


class TestQuota:
    def test_no_rolling_hour_exceeds_safe_limit(self, clock):
        limiter = _limiter(clock)
        times = [_call(limiter, clock) for _ in range(30)]

        for start in times:
            in_window = [t for t in times if start <= t < start + WINDOW_SECONDS]
            assert len(in_window) <= limiter.safe_limit

    def test_blocks_until_oldest_call_leaves_window(self, clock):
        limiter = _limiter(clock)
        for _ in range(8):
            _call(limiter, clock)
        clock.advance(600)

        at = _call(limiter, clock)

        # First call was at 1000, so room appears at 4600
        assert at == pytest.approx(1000 + WINDOW_SECONDS)
        assert clock.sleeps == [pytest.approx(WINDOW_SECONDS - 600)]

    def test_quota_sleep_is_capped(self, clock):
        limiter = _limiter(clock, requests_per_hour=1, max_quota_wait=60)
        _call(limiter, clock)

        _call(limiter, clock)

        assert all(s <= 60 for s in clock.sleeps)
        assert sum(clock.sleeps) == pytest.approx(WINDOW_SECONDS)

    def test_deadline_stops_quota_wait(self, clock):
        limiter = _limiter(clock, requests_per_hour=1)
        _call(limiter, clock)

        with pytest.raises(DeadlineExceededError):
            limiter.acquire(deadline=clock() + 10)
        assert clock.sleeps == []

    def test_failed_calls_still_count(self, clock):
        limiter = _limiter(clock)
        limiter.acquire()
        limiter.release()  # the call itself raised, slot still returned

        assert limiter.status()["calls_in_window"] == 1


class TestSpacing:
    def test_second_call_waits_min_interval(self, clock):
        limiter = _limiter(clock, min_interval=10)
        _call(limiter, clock)
        _call(limiter, clock)

        assert clock.sleeps == [pytest.approx(10)]

    def test_no_wait_once_interval_has_passed(self, clock):
        limiter = _limiter(clock, min_interval=10)
        _call(limiter, clock)
        clock.advance(30)
        _call(limiter, clock)

        assert clock.sleeps == []

    def test_overlapping_callers_queue_behind_each_other(self, clock):
        limiter = _limiter(clock, min_interval=10)
        limiter.acquire()
        limiter.acquire()
        limiter.acquire()

        assert clock.sleeps == [pytest.approx(10), pytest.approx(10)]


class TestConcurrency:
    def test_semaphore_timeout(self, clock):
        limiter = _limiter(clock, max_concurrency=1)
        limiter.acquire()

        with pytest.raises(ConcurrencyTimeoutError):
            limiter.acquire()

    def test_release_frees_slot(self, clock):
        limiter = _limiter(clock, max_concurrency=1)
        limiter.acquire()
        limiter.release()
        limiter.acquire()

        assert limiter.status()["in_flight"] == 1

    def test_threads_never_exceed_cap_or_quota(self):
        limiter = RateLimiter(
            requests_per_hour=10,
            safety_margin=0.8,
            min_interval=0,
            max_concurrency=2,
            acquire_timeout=5,
            max_quota_wait=1,
            sleep=lambda s: None,
        )
        active = 0
        peak = 0
        lock = threading.Lock()

        def worker():
            nonlocal active, peak
            limiter.acquire()
            try:
                with lock:
                    active += 1
                    peak = max(peak, active)
                time.sleep(0.01)
                with lock:
                    active -= 1
            finally:
                limiter.release()

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert peak <= 2
        status = limiter.status()
        assert status["calls_in_window"] == 8
        assert status["in_flight"] == 0
        assert status["available_slots"] == 2


def test_status_snapshot(clock):
    limiter = _limiter(clock)
    _call(limiter, clock)
    clock.advance(120)

    status = limiter.status()

    assert status["calls_in_window"] == 1
    assert status["safe_limit"] == 8
    assert status["requests_per_hour"] == 10
    assert status["window_age_seconds"] == pytest.approx(120)
