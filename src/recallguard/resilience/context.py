"""Shared resilience state for one running memory subsystem."""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Awaitable
from collections.abc import Callable
from typing import Any
from typing import TypeVar

from recallguard.cache import CacheLayer
from recallguard.config import CacheConfig
from recallguard.config import CircuitBreakerConfig
from recallguard.config import MonitoringConfig
from recallguard.config import RetryPolicy
from recallguard.config import Settings
from recallguard.observability import PerformanceMonitor
from recallguard.resilience.breaker import CircuitBreakerRegistry
from recallguard.resilience.degradation import Fallback
from recallguard.resilience.degradation import with_graceful_degradation
from recallguard.resilience.health import ErrorTracker
from recallguard.resilience.retry import RetryExecutor
from recallguard.resilience.retry import Sleep

T = TypeVar("T")


class ResilienceContext:
    """Owns the breaker registry, error tracker, cache and monitor.

    Components receive one context at construction time instead of
    reaching for module globals, so tests can build isolated instances
    with a fake clock and a recording sleep.
    """

    def __init__(
        self,
        *,
        breaker_config: CircuitBreakerConfig | None = None,
        cache_config: CacheConfig | None = None,
        monitoring_config: MonitoringConfig | None = None,
        retry_policies: dict[str, RetryPolicy] | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.monitoring_config = monitoring_config or MonitoringConfig()
        self.monitor = PerformanceMonitor(self.monitoring_config, clock=clock)
        self.breakers = CircuitBreakerRegistry(breaker_config, clock=clock)
        self.errors = ErrorTracker(clock=clock)
        self.cache = CacheLayer(cache_config, monitor=self.monitor, clock=clock)
        self.retry = RetryExecutor(
            self.breakers, self.errors, retry_policies, sleep=sleep, rng=rng
        )
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> ResilienceContext:
        return cls(
            breaker_config=settings.circuit_breaker,
            cache_config=settings.cache,
            monitoring_config=settings.monitoring,
            retry_policies=settings.retry_policies,
            **kwargs,
        )

    # -- composition helpers --

    async def with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        dependency: str,
        context: dict[str, Any] | None = None,
    ) -> T:
        return await self.retry.run(operation, dependency, context)

    async def with_graceful_degradation(
        self,
        operation: Callable[[], Awaitable[T]],
        fallback: Fallback[T],
        operation_name: str,
        context: dict[str, Any] | None = None,
    ) -> T:
        return await with_graceful_degradation(
            operation, fallback, operation_name, context
        )

    async def with_caching(
        self,
        operation_type: str,
        key: str,
        operation: Callable[[], Awaitable[T]],
        context: dict[str, Any] | None = None,
    ) -> T:
        return await self.cache.with_caching(operation_type, key, operation, context)

    async def track(
        self,
        operation_type: str,
        operation: Callable[[], Awaitable[T]],
        context: dict[str, Any] | None = None,
    ) -> T:
        return await self.monitor.track(operation_type, operation, context)

    async def pause(self, seconds: float) -> None:
        """Non-blocking pause between batches."""
        if seconds > 0:
            await self._sleep(seconds)

    # -- health --

    def is_system_healthy(self) -> bool:
        return (
            self.errors.total() < self.monitoring_config.daily_error_threshold
            and not self.breakers.open_breakers()
        )

    def system_health_report(self) -> dict[str, Any]:
        total_errors = self.errors.total()
        open_breakers = self.breakers.open_breakers()
        recommendations: list[str] = []
        if total_errors > self.monitoring_config.daily_error_threshold:
            recommendations.append(
                "High error rate detected. Check provider and datastore status."
            )
        for key in open_breakers:
            recommendations.append(
                f"Circuit breaker open for {key}. Service may be degraded."
            )
        if self.errors.count("openai") > 10:
            recommendations.append(
                "Frequent provider errors. Consider checking API quotas and limits."
            )
        return {
            "healthy": self.is_system_healthy(),
            "error_counts": self.errors.stats(),
            "total_errors": total_errors,
            "circuit_breakers": self.breakers.status(),
            "cache": self.cache.stats(),
            "recommendations": recommendations,
        }

    # -- lifecycle --

    def start(self) -> None:
        self.cache.start()

    async def stop(self) -> None:
        await self.cache.stop()

    def reset(self) -> None:
        """Drop all shared state (breakers, counters, cache, metrics)."""
        self.breakers.clear()
        self.errors.clear()
        self.cache.clear()
        self.monitor.reset()
