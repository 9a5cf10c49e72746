"""In-process TTL cache for memory read paths.

Entries are keyed by ``"<operation>:<canonical JSON of params>"`` so that
parameter order never changes the key. Expired entries are dropped lazily
on read and eagerly by ``sweep()``, which a background task runs on a
fixed interval between ``start()`` and ``stop()``.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import re
import time
from collections.abc import Awaitable
from collections.abc import Callable
from dataclasses import dataclass
from time import perf_counter
from typing import Any
from typing import TypeVar

from recallguard.config import CacheConfig
from recallguard.observability import PerformanceMonitor

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Distinguishes "not cached" from a cached None
_MISS = object()


@dataclass
class CacheEntry:
    data: Any
    timestamp: float
    ttl: float
    access_count: int = 0
    last_accessed: float = 0.0

    def is_expired(self, now: float) -> bool:
        return now - self.timestamp > self.ttl


def cache_key(operation: str, params: dict[str, Any]) -> str:
    """Canonical cache key for *operation* called with *params*."""
    encoded = json.dumps(params, sort_keys=True, default=str, separators=(",", ":"))
    return f"{operation}:{encoded}"


def _avatar_scope(key: str) -> str | None:
    _, _, encoded = key.partition(":")
    try:
        params = json.loads(encoded)
    except ValueError:
        return None
    return params.get("avatar_id") if isinstance(params, dict) else None


class CacheLayer:
    """TTL cache with regex invalidation and hit/miss metrics."""

    def __init__(
        self,
        config: CacheConfig | None = None,
        *,
        monitor: PerformanceMonitor | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or CacheConfig()
        self._monitor = monitor
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._sweeper: asyncio.Task[None] | None = None

    # -- primitives --

    def _lookup(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return _MISS
        now = self._clock()
        if entry.is_expired(now):
            del self._entries[key]
            return _MISS
        entry.access_count += 1
        entry.last_accessed = now
        return entry.data

    def get(self, key: str, default: Any = None) -> Any:
        """Return the cached value for *key*, or *default* when absent or expired."""
        value = self._lookup(key)
        return default if value is _MISS else value

    def contains(self, key: str) -> bool:
        return self._lookup(key) is not _MISS

    def set(self, key: str, data: Any, operation_type: str | None = None) -> None:
        now = self._clock()
        self._entries[key] = CacheEntry(
            data=data,
            timestamp=now,
            ttl=self.config.ttl_for(operation_type),
            last_accessed=now,
        )

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    # -- read-through --

    async def with_caching(
        self,
        operation_type: str,
        key: str,
        operation: Callable[[], Awaitable[T]],
        context: dict[str, Any] | None = None,
    ) -> T:
        """Serve *key* from cache, or await *operation* and cache its result."""
        start = perf_counter()
        cached = self._lookup(key)
        if cached is not _MISS:
            self._record(f"{operation_type}_cache_hit", start, True, key, context)
            return cached

        ok = False
        try:
            result = await operation()
            ok = True
        finally:
            self._record(f"{operation_type}_cache_miss", start, ok, key, context)
        self.set(key, result, operation_type)
        return result

    def _record(
        self,
        metric: str,
        start: float,
        ok: bool,
        key: str,
        context: dict[str, Any] | None,
    ) -> None:
        if self._monitor is None:
            return
        self._monitor.record(
            metric,
            (perf_counter() - start) * 1000,
            success=ok,
            context={**(context or {}), "cache_key": key},
        )

    # -- invalidation --

    def invalidate(self, pattern: str) -> int:
        """Remove every entry whose key matches the regex *pattern*."""
        regex = re.compile(pattern)
        doomed = [key for key in self._entries if regex.search(key)]
        for key in doomed:
            del self._entries[key]
        if doomed:
            logger.debug("Invalidated %d cache entries matching %s", len(doomed), pattern)
        return len(doomed)

    def invalidate_user(self, user_id: str, avatar_id: str | None = None) -> int:
        """Remove every entry whose parameters name *user_id*.

        With *avatar_id*, entries scoped to another avatar survive. Entries
        without an avatar scope cover every avatar, so they always go.
        """
        fragment = json.dumps(user_id)
        pattern = rf'"(?:user_id|target_user_id)":{re.escape(fragment)}(?:[,}}])'
        if avatar_id is None:
            return self.invalidate(pattern)

        regex = re.compile(pattern)
        doomed = [
            key
            for key in self._entries
            if regex.search(key) and _avatar_scope(key) in (None, avatar_id)
        ]
        for key in doomed:
            del self._entries[key]
        if doomed:
            logger.debug(
                "Invalidated %d cache entries for user %s avatar %s",
                len(doomed),
                user_id,
                avatar_id,
            )
        return len(doomed)

    def sweep(self) -> int:
        """Drop expired entries and return how many were removed."""
        now = self._clock()
        expired = [key for key, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Cache sweep removed %d expired entries", len(expired))
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        entries = list(self._entries.values())
        total_size = sum(len(json.dumps(e.data, default=str)) for e in entries)
        return {
            "total_entries": len(entries),
            "total_size": total_size,
            "hit_rate": self._monitor.cache_hit_rate() if self._monitor else 0.0,
            "average_access_count": (
                sum(e.access_count for e in entries) / len(entries) if entries else 0.0
            ),
            "expired_entries": sum(1 for e in entries if e.is_expired(now)),
        }

    def __len__(self) -> int:
        return len(self._entries)

    # -- background sweep --

    def start(self) -> None:
        """Start the periodic sweep task on the running loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_forever())

    async def stop(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sweeper
        self._sweeper = None

    @property
    def running(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval_seconds)
            self.sweep()
