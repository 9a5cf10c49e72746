"""In-process performance metrics for memory operations."""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Awaitable
from collections.abc import Callable
from dataclasses import asdict
from dataclasses import dataclass
from dataclasses import field
from time import perf_counter
from typing import Any
from typing import TypeVar

from recallguard.config import MonitoringConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DAY_SECONDS = 24 * 60 * 60.0


@dataclass(frozen=True)
class PerformanceMetric:
    """One recorded operation."""

    operation_type: str
    duration_ms: float
    timestamp: float
    success: bool
    context: dict[str, Any] = field(default_factory=dict)


@dataclass
class PerformanceStats:
    """Aggregated metrics for one operation type over a time window."""

    operation_type: str
    total_operations: int = 0
    successful_operations: int = 0
    failed_operations: int = 0
    average_ms: float = 0.0
    min_ms: float = 0.0
    max_ms: float = 0.0
    p95_ms: float = 0.0
    p99_ms: float = 0.0
    operations_per_second: float = 0.0


def _percentile(sorted_values: list[float], fraction: float) -> float:
    index = min(int(len(sorted_values) * fraction), len(sorted_values) - 1)
    return sorted_values[index]


class PerformanceMonitor:
    """Append-only, capped log of operation timings.

    The oldest metrics are dropped first once ``max_metrics`` is reached.
    """

    def __init__(
        self,
        config: MonitoringConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or MonitoringConfig()
        self._clock = clock
        self._metrics: deque[PerformanceMetric] = deque(
            maxlen=self._config.max_metrics
        )

    # -- write --

    def record(
        self,
        operation_type: str,
        duration_ms: float,
        *,
        success: bool,
        context: dict[str, Any] | None = None,
    ) -> None:
        normalized = max(float(duration_ms), 0.0)
        self._metrics.append(
            PerformanceMetric(
                operation_type=operation_type,
                duration_ms=normalized,
                timestamp=self._clock(),
                success=success,
                context=dict(context or {}),
            )
        )
        if normalized > self._config.slow_operation_ms:
            logger.warning(
                "Slow memory operation operation=%s duration_ms=%.1f",
                operation_type,
                normalized,
            )
        else:
            logger.debug(
                "operation=%s duration_ms=%.3f ok=%s",
                operation_type,
                normalized,
                success,
            )

    async def track(
        self,
        operation_type: str,
        operation: Callable[[], Awaitable[T]],
        context: dict[str, Any] | None = None,
    ) -> T:
        """Await *operation* and record its duration and outcome."""
        start = perf_counter()
        ok = False
        try:
            result = await operation()
            ok = True
            return result
        finally:
            self.record(
                operation_type,
                (perf_counter() - start) * 1000,
                success=ok,
                context=context,
            )

    def reset(self) -> None:
        self._metrics.clear()

    # -- read --

    def metrics(self, window_seconds: float | None = None) -> list[PerformanceMetric]:
        if window_seconds is None:
            return list(self._metrics)
        cutoff = self._clock() - window_seconds
        return [m for m in self._metrics if m.timestamp >= cutoff]

    def count(self, operation_type: str) -> int:
        return sum(1 for m in self._metrics if m.operation_type == operation_type)

    def cache_hit_rate(self) -> float:
        """Share of cache lookups that were hits (0.0 without lookups)."""
        hits = sum(1 for m in self._metrics if m.operation_type.endswith("_cache_hit"))
        misses = sum(
            1 for m in self._metrics if m.operation_type.endswith("_cache_miss")
        )
        total = hits + misses
        return hits / total if total else 0.0

    def stats(
        self, operation_type: str, window_seconds: float = _DAY_SECONDS
    ) -> PerformanceStats:
        relevant = [
            m
            for m in self.metrics(window_seconds)
            if m.operation_type == operation_type
        ]
        if not relevant:
            return PerformanceStats(operation_type=operation_type)

        durations = sorted(m.duration_ms for m in relevant)
        successful = sum(1 for m in relevant if m.success)
        return PerformanceStats(
            operation_type=operation_type,
            total_operations=len(relevant),
            successful_operations=successful,
            failed_operations=len(relevant) - successful,
            average_ms=sum(durations) / len(durations),
            min_ms=durations[0],
            max_ms=durations[-1],
            p95_ms=_percentile(durations, 0.95),
            p99_ms=_percentile(durations, 0.99),
            operations_per_second=len(relevant) / window_seconds,
        )

    def report(self, window_seconds: float = _DAY_SECONDS) -> dict[str, Any]:
        """Summary over all operation types plus tuning recommendations."""
        relevant = self.metrics(window_seconds)
        operation_types = sorted({m.operation_type for m in relevant})
        total = len(relevant)
        successful = sum(1 for m in relevant if m.success)
        slow = sum(
            1 for m in relevant if m.duration_ms > self._config.slow_operation_ms
        )
        average = sum(m.duration_ms for m in relevant) / total if total else 0.0

        recommendations: list[str] = []
        if total and successful / total < 0.95:
            recommendations.append(
                "Success rate is below 95%. Consider investigating error patterns."
            )
        if total and slow > total * 0.1:
            recommendations.append(
                "More than 10% of operations are slow. Consider optimization."
            )
        if average > 2000:
            recommendations.append(
                "Average operation duration is high. Consider caching or optimization."
            )
        if self.count_matching("_cache_") and self.cache_hit_rate() < 0.5:
            recommendations.append(
                "Cache hit rate is low. Consider adjusting cache TTL or strategy."
            )

        return {
            "summary": {
                "total_operations": total,
                "success_rate": successful / total if total else 1.0,
                "average_ms": round(average, 3),
                "slow_operations": slow,
            },
            "operation_stats": [
                asdict(self.stats(op, window_seconds)) for op in operation_types
            ],
            "recommendations": recommendations,
        }

    def count_matching(self, fragment: str) -> int:
        return sum(1 for m in self._metrics if fragment in m.operation_type)
