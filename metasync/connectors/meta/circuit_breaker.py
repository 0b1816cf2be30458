"""METASYNC: Quota Circuit Breaker.

Opens on a quota violation and rejects every call until the cooldown for that
quota scope has elapsed. Rejections fail fast; callers re-invoke later.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from metasync.config import settings
from metasync.core.errors import CircuitOpenError, QuotaScope
from metasync.core.logging import get_logger

logger = get_logger("meta.circuit_breaker")


@dataclass
class CircuitBreakerState:
    is_open: bool = False
    reset_at: float = 0.0
    consecutive_quota_errors: int = 0
    last_scope: Optional[QuotaScope] = None
    trips: int = 0


class CircuitBreaker:
    """CLOSED/OPEN breaker keyed on QuotaError. Thread-safe."""

    def __init__(
        self,
        cooldowns: Optional[Dict[QuotaScope, float]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cooldowns = cooldowns or {
            QuotaScope.ACCOUNT: settings.breaker_account_cooldown_seconds,
            QuotaScope.APPLICATION: settings.breaker_application_cooldown_seconds,
            QuotaScope.TRANSIENT: settings.breaker_transient_cooldown_seconds,
        }
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitBreakerState()

    @property
    def is_open(self) -> bool:
        with self._lock:
            return self._state.is_open and self._clock() < self._state.reset_at

    def before_call(self) -> int:
        """Raise CircuitOpenError while the cooldown is running.

        Returns the trip count, to hand back to ``record_success``.
        """
        with self._lock:
            if not self._state.is_open:
                return self._state.trips
            remaining = self._state.reset_at - self._clock()
            if remaining > 0:
                raise CircuitOpenError(remaining)
            # Cooldown over: let the next call reach the API again
            self._state.is_open = False
            logger.info("Circuit breaker cooldown elapsed, closing")
            return self._state.trips

    def trip(self, scope: QuotaScope) -> float:
        """Open the breaker for the scope's cooldown. Returns the cooldown."""
        cooldown = self.cooldowns.get(scope, max(self.cooldowns.values()))
        with self._lock:
            now = self._clock()
            # A shorter cooldown never cuts an existing longer one short
            self._state.reset_at = max(self._state.reset_at, now + cooldown)
            self._state.is_open = True
            self._state.consecutive_quota_errors += 1
            self._state.last_scope = scope
            self._state.trips += 1
            count = self._state.consecutive_quota_errors
        logger.error(
            f"Circuit breaker tripped by {scope.value} quota error, "
            f"cooldown {cooldown:.0f}s (consecutive quota errors: {count})"
        )
        return cooldown

    def record_success(self, trips: Optional[int] = None) -> None:
        """Close the breaker after a successful call.

        ``trips`` is the value ``before_call`` returned for this call. A trip
        recorded since then belongs to a newer failure and stays open.
        """
        with self._lock:
            if trips is not None and trips != self._state.trips:
                logger.debug("Breaker tripped during call, keeping it open")
                return
            if self._state.consecutive_quota_errors or self._state.is_open:
                logger.info("API call succeeded, circuit breaker reset")
            self._state.is_open = False
            self._state.consecutive_quota_errors = 0

    def status(self) -> Dict[str, Any]:
        with self._lock:
            now = self._clock()
            open_ = self._state.is_open and now < self._state.reset_at
            return {
                "is_open": open_,
                "retry_after_seconds": (
                    round(self._state.reset_at - now, 1) if open_ else 0.0
                ),
                "consecutive_quota_errors": self._state.consecutive_quota_errors,
                "last_scope": (
                    self._state.last_scope.value if self._state.last_scope else None
                ),
            }
