"""Daily error counters and structured error logging."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime
from datetime import timezone

from recallguard.errors import MemoryErrorKind
from recallguard.errors import MemoryOperationError

logger = logging.getLogger(__name__)

_DAY_SECONDS = 24 * 60 * 60.0


class ErrorTracker:
    """Counts failures per dependency per UTC day.

    Keys look like ``openai_2026-10-16``. All counters are dropped once a
    day has passed since the last reset.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._counts: dict[str, int] = {}
        self._last_reset = clock()

    def _key(self, dependency: str) -> str:
        day = datetime.fromtimestamp(self._clock(), tz=timezone.utc).date()
        return f"{dependency}_{day.isoformat()}"

    def increment(self, dependency: str) -> int:
        now = self._clock()
        if now - self._last_reset > _DAY_SECONDS:
            self._counts.clear()
            self._last_reset = now
        key = self._key(dependency)
        self._counts[key] = self._counts.get(key, 0) + 1
        return self._counts[key]

    def reset(self, dependency: str) -> None:
        self._counts.pop(self._key(dependency), None)

    def count(self, dependency: str) -> int:
        return self._counts.get(self._key(dependency), 0)

    def total(self) -> int:
        return sum(self._counts.values())

    def stats(self) -> dict[str, int]:
        return dict(self._counts)

    def clear(self) -> None:
        self._counts.clear()
        self._last_reset = self._clock()


def log_memory_error(error: MemoryOperationError, *, error_count: int = 0) -> None:
    """Log *error* at a level matching its severity."""
    data = error.to_dict()
    data["error_count"] = error_count
    if error.kind is MemoryErrorKind.PROVIDER_QUOTA_EXCEEDED:
        logger.critical("Provider quota exceeded: %s", data)
    elif error.is_retryable:
        logger.warning("Retryable error occurred: %s", data)
    else:
        logger.error("Non-retryable error occurred: %s", data)
