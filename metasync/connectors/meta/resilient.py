"""METASYNC: Resilient API Client.

Wraps any single Graph API operation with the circuit breaker, the hourly
rate limiter and retry-with-backoff. One instance is shared by every sync in
the process so the quota and breaker state are global.
"""

import threading
import time
from typing import Any, Callable, Dict, Optional, TypeVar

from metasync.config import settings
from metasync.connectors.meta.circuit_breaker import CircuitBreaker
from metasync.connectors.meta.rate_limiter import RateLimiter
from metasync.core.errors import (
    DeadlineExceededError,
    QuotaError,
    TransientServerError,
)
from metasync.core.logging import get_logger

logger = get_logger("meta.resilient")

T = TypeVar("T")

SERVER_BACKOFF_MULTIPLIER = 2
THROTTLE_BACKOFF_MULTIPLIER = 3


class ResilientApiClient:
    """Executes API operations under rate limit, breaker and retry policy."""

    def __init__(
        self,
        rate_limiter: Optional[RateLimiter] = None,
        breaker: Optional[CircuitBreaker] = None,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        server_max_delay: Optional[float] = None,
        throttle_max_delay: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.rate_limiter = rate_limiter or RateLimiter(clock=clock, sleep=sleep)
        self.breaker = breaker or CircuitBreaker(clock=clock)
        self.max_attempts = max(max_attempts or settings.retry_attempts, 1)
        self.base_delay = (
            base_delay if base_delay is not None else settings.retry_base_delay_seconds
        )
        self.server_max_delay = (
            server_max_delay
            if server_max_delay is not None
            else settings.retry_server_max_delay_seconds
        )
        self.throttle_max_delay = (
            throttle_max_delay
            if throttle_max_delay is not None
            else settings.retry_throttle_max_delay_seconds
        )
        self._clock = clock
        self._sleep = sleep

    def backoff_delay(self, retry: int, throttled: bool = False) -> float:
        """Delay before retry number ``retry`` (0-based)."""
        if throttled:
            delay = self.base_delay * THROTTLE_BACKOFF_MULTIPLIER**retry
            return min(delay, self.throttle_max_delay)
        delay = self.base_delay * SERVER_BACKOFF_MULTIPLIER**retry
        return min(delay, self.server_max_delay)

    def _check_deadline(self, deadline: Optional[float], name: str) -> None:
        if deadline is not None and self._clock() >= deadline:
            raise DeadlineExceededError(f"Deadline exceeded before {name}")

    # ── Core Execute ──

    def execute(
        self,
        operation: Callable[[], T],
        deadline: Optional[float] = None,
        name: Optional[str] = None,
    ) -> T:
        """Run ``operation`` with breaker, rate limit and retries.

        ``deadline`` is an absolute value of the client's clock. QuotaError
        trips the breaker and propagates; TransientServerError is retried up
        to ``max_attempts``; every other error propagates untouched.
        """
        name = name or getattr(operation, "__name__", "operation")
        error: Optional[TransientServerError] = None

        for attempt in range(1, self.max_attempts + 1):
            self._check_deadline(deadline, name)
            self.breaker.before_call()
            self.rate_limiter.acquire(deadline)
            started = self._clock()
            try:
                # The limiter may have waited; another caller can trip meanwhile
                trips = self.breaker.before_call()
                result = operation()
            except QuotaError as e:
                self.breaker.trip(e.scope)
                raise
            except TransientServerError as e:
                error = e
            else:
                self.breaker.record_success(trips)
                logger.debug(
                    f"{name} succeeded on attempt {attempt}",
                    extra={
                        "attempt": attempt,
                        "duration_ms": round((self._clock() - started) * 1000),
                    },
                )
                return result
            finally:
                self.rate_limiter.release()

            if attempt >= self.max_attempts:
                break
            delay = self.backoff_delay(attempt - 1, error.throttled)
            if deadline is not None and self._clock() + delay > deadline:
                raise DeadlineExceededError(
                    f"Deadline exceeded while retrying {name}: {error}"
                ) from error
            logger.warning(
                f"{name} failed ({error}). Retrying in {delay:.1f}s "
                f"(attempt {attempt}/{self.max_attempts})",
                extra={"attempt": attempt, "error_code": error.error_code},
            )
            self._sleep(delay)

        logger.error(f"{name} failed after {self.max_attempts} attempts: {error}")
        raise error

    def status(self) -> Dict[str, Any]:
        return {
            "rate_limiter": self.rate_limiter.status(),
            "circuit_breaker": self.breaker.status(),
        }


# ── Process-wide Instance ──

_shared: Optional[ResilientApiClient] = None
_shared_lock = threading.Lock()


def shared_api_client() -> ResilientApiClient:
    """The one ResilientApiClient every sync in this process goes through."""
    global _shared
    with _shared_lock:
        if _shared is None:
            _shared = ResilientApiClient()
        return _shared


def reset_shared_api_client() -> None:
    global _shared
    with _shared_lock:
        _shared = None
