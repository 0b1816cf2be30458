"""METASYNC: Hourly Quota Rate Limiter.

Keeps outgoing Graph API calls below a safety-margined hourly quota, spaces
consecutive calls by a minimum interval, and caps in-flight calls with a
bounded semaphore. All waits block the calling thread.

The hourly window is a sliding log of admission timestamps, so the quota holds
for any rolling hour rather than per clock hour.
"""

import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Optional

from metasync.config import settings
from metasync.core.errors import ConcurrencyTimeoutError, DeadlineExceededError
from metasync.core.logging import get_logger

logger = get_logger("meta.rate_limiter")

WINDOW_SECONDS = 3600.0


@dataclass
class RateLimitWindow:
    """Rolling hourly window. Guarded by RateLimiter._lock."""

    calls: Deque[float] = field(default_factory=deque)
    last_call_at: Optional[float] = None

    @property
    def calls_in_window(self) -> int:
        return len(self.calls)

    @property
    def window_start(self) -> Optional[float]:
        return self.calls[0] if self.calls else None


class RateLimiter:
    """Thread-safe hourly quota + spacing + concurrency limiter."""

    def __init__(
        self,
        requests_per_hour: Optional[int] = None,
        safety_margin: Optional[float] = None,
        min_interval: Optional[float] = None,
        max_concurrency: Optional[int] = None,
        acquire_timeout: Optional[float] = None,
        max_quota_wait: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.requests_per_hour = (
            requests_per_hour
            if requests_per_hour is not None
            else settings.rate_limit_requests_per_hour
        )
        self.safety_margin = (
            safety_margin
            if safety_margin is not None
            else settings.rate_limit_safety_margin
        )
        self.min_interval = (
            min_interval
            if min_interval is not None
            else settings.rate_limit_min_interval_seconds
        )
        self.max_concurrency = max_concurrency or settings.rate_limit_max_concurrency
        self.acquire_timeout = (
            acquire_timeout
            if acquire_timeout is not None
            else settings.rate_limit_acquire_timeout_seconds
        )
        self.max_quota_wait = (
            max_quota_wait
            if max_quota_wait is not None
            else settings.rate_limit_max_quota_wait_seconds
        )
        self.safe_limit = max(
            int(math.floor(self.requests_per_hour * self.safety_margin)), 1
        )

        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._slots = threading.BoundedSemaphore(self.max_concurrency)
        self._in_flight = 0
        self._window = RateLimitWindow()

        logger.info(
            f"RateLimiter initialized: {self.safe_limit}/{self.requests_per_hour} "
            f"requests per hour, {self.min_interval}s spacing, "
            f"{self.max_concurrency} concurrent"
        )

    # ── Window Bookkeeping (caller holds the lock) ──

    def _cleanup(self, now: float) -> None:
        """Drop admissions older than the window."""
        calls = self._window.calls
        while calls and now - calls[0] >= WINDOW_SECONDS:
            calls.popleft()

    def _quota_wait(self, now: float) -> float:
        """Seconds until the window has room, 0 when it already has."""
        self._cleanup(now)
        if self._window.calls_in_window < self.safe_limit:
            return 0.0
        remaining = self._window.calls[0] + WINDOW_SECONDS - now
        return max(min(remaining, self.max_quota_wait), 0.0)

    def _check_deadline(self, deadline: Optional[float], wait: float = 0.0) -> None:
        if deadline is not None and self._clock() + wait > deadline:
            raise DeadlineExceededError(
                f"Deadline reached while waiting {wait:.1f}s for rate limit capacity"
            )

    # ── Public API ──

    def acquire(self, deadline: Optional[float] = None) -> None:
        """Block until one call may be issued. Pair with release()."""
        while True:
            # 1. Wait for hourly capacity
            while True:
                with self._lock:
                    wait = self._quota_wait(self._clock())
                if wait <= 0:
                    break
                self._check_deadline(deadline, wait)
                logger.warning(
                    f"Rate limit safety buffer reached, waiting {wait:.0f} seconds"
                )
                self._sleep(wait)

            # 2. Concurrency slot
            timeout = self.acquire_timeout
            if deadline is not None:
                timeout = max(min(timeout, deadline - self._clock()), 0.0)
            if not self._slots.acquire(timeout=timeout):
                self._check_deadline(deadline)
                raise ConcurrencyTimeoutError(
                    f"Rate limit semaphore timeout after {timeout:.0f} seconds"
                )

            # 3. Reserve quota + spacing atomically
            with self._lock:
                now = self._clock()
                if self._quota_wait(now) <= 0:
                    last = self._window.last_call_at
                    spacing = 0.0
                    if last is not None:
                        spacing = max(last + self.min_interval - now, 0.0)
                    # Later callers queue behind this call's scheduled start
                    self._window.last_call_at = now + spacing
                    self._window.calls.append(now + spacing)
                    self._in_flight += 1
                    count = self._window.calls_in_window
                    break
            # Another thread took the last unit of quota
            self._slots.release()

        logger.debug(f"Request {count}/{self.safe_limit} in current hour")
        if spacing > 0:
            logger.debug(f"Minimum interval wait: {spacing:.2f}s")
            self._sleep(spacing)

    def release(self) -> None:
        """Return the concurrency slot taken by acquire()."""
        with self._lock:
            self._in_flight = max(self._in_flight - 1, 0)
        self._slots.release()

    def status(self) -> Dict[str, Any]:
        """Snapshot of the window for monitoring."""
        with self._lock:
            now = self._clock()
            self._cleanup(now)
            start = self._window.window_start
            return {
                "calls_in_window": self._window.calls_in_window,
                "safe_limit": self.safe_limit,
                "requests_per_hour": self.requests_per_hour,
                "window_age_seconds": round(now - start, 1) if start is not None else 0.0,
                "in_flight": self._in_flight,
                "available_slots": self.max_concurrency - self._in_flight,
            }
