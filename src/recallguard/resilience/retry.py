"""Retry executor with exponential backoff, jitter and breaker checks."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable
from collections.abc import Callable
from collections.abc import Mapping
from typing import Any
from typing import TypeVar

from recallguard.config import DEFAULT_RETRY_POLICIES
from recallguard.config import RetryPolicy
from recallguard.errors import classify_error
from recallguard.resilience.breaker import CircuitBreakerRegistry
from recallguard.resilience.health import ErrorTracker
from recallguard.resilience.health import log_memory_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]


class RetryExecutor:
    """Runs an operation under the retry policy of one dependency.

    Per attempt: consult the breaker, run the operation, and on failure
    classify, count and log the error before deciding whether to back off
    and try again. The last classified error is raised when retrying stops.
    """

    def __init__(
        self,
        breakers: CircuitBreakerRegistry,
        tracker: ErrorTracker,
        policies: Mapping[str, RetryPolicy] | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._breakers = breakers
        self._tracker = tracker
        self._policies = dict(policies or DEFAULT_RETRY_POLICIES)
        self._sleep = sleep
        self._rng = rng or random.Random()

    def policy(self, dependency: str) -> RetryPolicy:
        try:
            return self._policies[dependency]
        except KeyError:
            raise ValueError(f"No retry policy configured for '{dependency}'") from None

    def backoff_delay(self, policy: RetryPolicy, attempt: int) -> float:
        """Delay before the retry that follows failed *attempt*."""
        jitter = self._rng.uniform(0, policy.jitter) if policy.jitter > 0 else 0.0
        return policy.delay_for(attempt) + jitter

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        dependency: str,
        context: dict[str, Any] | None = None,
    ) -> T:
        policy = self.policy(dependency)
        had_failure = False

        for attempt in range(1, policy.max_attempts + 1):
            self._breakers.check(dependency)
            try:
                result = await operation()
            except Exception as exc:
                had_failure = True
                error = classify_error(
                    exc,
                    {
                        **(context or {}),
                        "dependency": dependency,
                        "attempt": attempt,
                        "max_attempts": policy.max_attempts,
                    },
                )
                count = self._tracker.increment(dependency)
                self._breakers.record_failure(dependency)
                log_memory_error(error, error_count=count)

                exhausted = attempt >= policy.max_attempts
                if (
                    exhausted
                    or not error.is_retryable
                    or error.kind not in policy.retryable_kinds
                ):
                    if error is exc:
                        raise
                    raise error from exc

                delay = self.backoff_delay(policy, attempt)
                logger.info(
                    "Retrying %s operation in %.3fs (attempt %d/%d)",
                    dependency,
                    delay,
                    attempt,
                    policy.max_attempts,
                )
                await self._sleep(delay)
                continue

            self._breakers.record_success(dependency)
            if had_failure:
                self._tracker.reset(dependency)
            return result

        # Unreachable: the loop either returns or raises.
        raise RuntimeError(f"retry loop for {dependency} ended without a result")
