"""Per-dependency circuit breakers.

Each dependency key ("openai", "database", "vector_search") has its own
breaker:

* **closed**: calls go through; consecutive failures are counted.
* **open**: after ``failure_threshold`` consecutive failures, calls are
  rejected with ``CircuitOpenError`` until ``recovery_seconds`` elapse.
* **half-open**: the first call after the recovery window is let through
  as a trial. Other calls are rejected while it is in flight. A trial
  success closes the breaker; a trial failure re-opens it.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import asdict
from dataclasses import dataclass
from datetime import datetime
from datetime import timezone
from typing import Any

from recallguard.config import CircuitBreakerConfig
from recallguard.errors import CircuitOpenError

logger = logging.getLogger(__name__)


@dataclass
class CircuitBreakerState:
    """Mutable health record of one dependency."""

    is_open: bool = False
    failure_count: int = 0
    last_failure_time: float | None = None
    next_attempt_time: float = 0.0
    # Set while a half-open trial call is in flight
    trial_started_at: float | None = None


def _iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class CircuitBreakerRegistry:
    """Tracks breaker state for every dependency key."""

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: dict[str, CircuitBreakerState] = {}

    def state(self, key: str) -> CircuitBreakerState | None:
        return self._breakers.get(key)

    def _get_or_create(self, key: str) -> CircuitBreakerState:
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreakerState()
            self._breakers[key] = breaker
        return breaker

    # -- gate --

    def check(self, key: str) -> None:
        """Raise ``CircuitOpenError`` if calls to *key* must be rejected."""
        breaker = self._breakers.get(key)
        if breaker is None:
            return

        now = self._clock()
        if breaker.is_open:
            if now < breaker.next_attempt_time:
                self._reject(key, breaker, breaker.next_attempt_time)
            breaker.is_open = False
            breaker.trial_started_at = now
            logger.info("Circuit breaker for %s entering half-open state", key)
            return

        if breaker.trial_started_at is not None:
            trial_deadline = breaker.trial_started_at + self.config.recovery_seconds
            if now < trial_deadline:
                self._reject(key, breaker, trial_deadline)
            # The previous trial never reported back; allow a fresh one.
            breaker.trial_started_at = now

    def _reject(self, key: str, breaker: CircuitBreakerState, retry_at: float) -> None:
        eta = max(retry_at - self._clock(), 0.0)
        logger.error(
            "Circuit breaker open for %s: rejecting call, recovery in %.1fs "
            "(failures=%d)",
            key,
            eta,
            breaker.failure_count,
        )
        raise CircuitOpenError(
            key,
            next_attempt_time=retry_at,
            failure_count=breaker.failure_count,
        )

    # -- outcome --

    def record_success(self, key: str) -> None:
        breaker = self._get_or_create(key)
        if breaker.trial_started_at is not None:
            logger.info("Circuit breaker for %s closed after successful trial", key)
        breaker.failure_count = 0
        breaker.is_open = False
        breaker.trial_started_at = None

    def record_failure(self, key: str) -> None:
        breaker = self._get_or_create(key)
        now = self._clock()
        breaker.failure_count += 1
        breaker.last_failure_time = now
        breaker.trial_started_at = None

        if breaker.failure_count >= self.config.failure_threshold:
            breaker.is_open = True
            breaker.next_attempt_time = now + self.config.recovery_seconds
            logger.error(
                "Circuit breaker opened for %s after %d failures; next attempt at %s",
                key,
                breaker.failure_count,
                _iso(breaker.next_attempt_time),
            )

    # -- admin --

    def reset(self, key: str) -> None:
        """Manually close the breaker for *key*."""
        breaker = self._breakers.get(key)
        if breaker is None:
            return
        breaker.is_open = False
        breaker.failure_count = 0
        breaker.next_attempt_time = self._clock()
        breaker.trial_started_at = None
        logger.info("Circuit breaker manually reset for %s", key)

    def clear(self) -> None:
        self._breakers.clear()

    def open_breakers(self) -> list[str]:
        return sorted(key for key, b in self._breakers.items() if b.is_open)

    def status(self) -> dict[str, dict[str, Any]]:
        """Snapshot of every breaker, with seconds left until recovery."""
        now = self._clock()
        snapshot: dict[str, dict[str, Any]] = {}
        for key, breaker in sorted(self._breakers.items()):
            entry = asdict(breaker)
            entry["last_failure_time"] = _iso(breaker.last_failure_time)
            entry["next_attempt_time"] = _iso(breaker.next_attempt_time)
            entry["time_until_recovery"] = (
                max(0.0, breaker.next_attempt_time - now) if breaker.is_open else 0.0
            )
            del entry["trial_started_at"]
            entry["half_open"] = breaker.trial_started_at is not None
            snapshot[key] = entry
        return snapshot
