"""Resilience primitives: breakers, retries, degradation and health."""

from __future__ import annotations

from recallguard.resilience.breaker import CircuitBreakerRegistry
from recallguard.resilience.breaker import CircuitBreakerState
from recallguard.resilience.context import ResilienceContext
from recallguard.resilience.degradation import with_graceful_degradation
from recallguard.resilience.health import ErrorTracker
from recallguard.resilience.health import log_memory_error
from recallguard.resilience.retry import RetryExecutor

__all__ = [
    "CircuitBreakerRegistry",
    "CircuitBreakerState",
    "ErrorTracker",
    "ResilienceContext",
    "RetryExecutor",
    "log_memory_error",
    "with_graceful_degradation",
]
