"""Memory retrieval: semantic search with keyword fallback, listings, stats."""

from __future__ import annotations

import logging
from typing import Any

from recallguard.cache import cache_key
from recallguard.config import RetrievalConfig
from recallguard.errors import NO_ROWS
from recallguard.errors import MemoryErrorKind
from recallguard.errors import MemoryOperationError
from recallguard.errors import StoreError
from recallguard.memory.schemas import MemoryFragment
from recallguard.memory.schemas import MemoryStats
from recallguard.memory.store import MemoryStore
from recallguard.memory.store import require_user_id
from recallguard.resilience.context import ResilienceContext
from recallguard.storage.base import ORDERABLE_COLUMNS
from recallguard.storage.base import FragmentDatastore
from recallguard.storage.base import FragmentRow

logger = logging.getLogger(__name__)

_DIRECTIONS = frozenset({"asc", "desc"})


def _owned(
    rows: list[FragmentRow], user_id: str, avatar_id: str | None = None
) -> list[FragmentRow]:
    """Drop any row outside *user_id* (and *avatar_id*, when given)."""
    kept = [
        r
        for r in rows
        if r.get("user_id") == user_id
        and (avatar_id is None or r.get("avatar_id") == avatar_id)
    ]
    if len(kept) != len(rows):
        logger.error(
            "Datastore returned %d rows outside the requested scope; dropping them",
            len(rows) - len(kept),
        )
    return kept


class MemoryRetriever:
    """Read path for memory fragments, always scoped to one user."""

    def __init__(
        self,
        datastore: FragmentDatastore,
        store: MemoryStore,
        resilience: ResilienceContext,
        config: RetrievalConfig | None = None,
    ) -> None:
        self._datastore = datastore
        self._store = store
        self._resilience = resilience
        self._config = config or RetrievalConfig()

    async def retrieve_relevant_memories(
        self,
        query: str,
        user_id: str,
        limit: int | None = None,
        similarity_threshold: float | None = None,
        include_context: bool = True,
        avatar_id: str | None = None,
    ) -> list[MemoryFragment]:
        """Fragments most similar to *query*, best first.

        Falls back to keyword search when the vector path fails. The result
        (from either path) is cached briefly. *avatar_id* narrows both paths
        to that avatar's fragments.
        """
        limit = self._config.default_limit if limit is None else limit
        threshold = (
            self._config.similarity_threshold
            if similarity_threshold is None
            else similarity_threshold
        )
        context: dict[str, Any] = {
            "user_id": user_id,
            "query_length": len(query),
            "limit": limit,
            "threshold": threshold,
            "avatar_id": avatar_id,
        }

        async def _vector_search() -> list[MemoryFragment]:
            require_user_id(user_id)
            embedding = await self._store.generate_embedding(query)
            rows = await self._resilience.with_retry(
                lambda: self._datastore.match_fragments(
                    embedding, threshold, limit, user_id, avatar_id
                ),
                "vector_search",
                {**context, "operation": "vector_similarity_search"},
            )
            if rows is None:
                raise MemoryOperationError(
                    MemoryErrorKind.SEARCH_FAILED,
                    "No data returned from vector similarity search",
                )
            return [
                MemoryFragment.from_row(row, include_context=include_context)
                for row in _owned(rows, user_id, avatar_id)
            ]

        async def _text_fallback() -> list[MemoryFragment]:
            logger.warning("Vector search failed, falling back to text search")
            return await self.search_memories_by_text(
                query, user_id, limit, avatar_id=avatar_id
            )

        key = cache_key(
            "relevant_memories",
            {
                "query": query[: self._config.cache_query_chars],
                "user_id": user_id,
                "limit": limit,
                "similarity_threshold": threshold,
                "include_context": include_context,
                "avatar_id": avatar_id,
            },
        )
        return await self._resilience.with_caching(
            "relevant_memories",
            key,
            lambda: self._resilience.with_graceful_degradation(
                _vector_search,
                _text_fallback,
                "retrieve_relevant_memories",
                context,
            ),
            context,
        )

    async def get_user_memories(
        self,
        user_id: str,
        limit: int | None = None,
        offset: int = 0,
        order_by: str = "created_at",
        order_direction: str = "desc",
        avatar_id: str | None = None,
    ) -> list[MemoryFragment]:
        """One page of the user's fragments; ``limit=0`` means no limit."""
        require_user_id(user_id)
        limit = self._config.list_limit if limit is None else limit
        if order_by not in ORDERABLE_COLUMNS:
            raise MemoryOperationError(
                MemoryErrorKind.INVALID_INPUT,
                f"order_by must be one of {sorted(ORDERABLE_COLUMNS)}",
                context={"order_by": order_by},
            )
        if order_direction not in _DIRECTIONS:
            raise MemoryOperationError(
                MemoryErrorKind.INVALID_INPUT,
                "order_direction must be 'asc' or 'desc'",
                context={"order_direction": order_direction},
            )
        if limit < 0 or offset < 0:
            raise MemoryOperationError(
                MemoryErrorKind.INVALID_INPUT,
                "limit and offset must not be negative",
                context={"limit": limit, "offset": offset},
            )

        params = {
            "user_id": user_id,
            "limit": limit,
            "offset": offset,
            "order_by": order_by,
            "order_direction": order_direction,
            "avatar_id": avatar_id,
        }

        async def _list() -> list[MemoryFragment]:
            rows = await self._datastore.list(
                user_id,
                limit=limit,
                offset=offset,
                order_by=order_by,
                descending=order_direction == "desc",
                avatar_id=avatar_id,
            )
            return [
                MemoryFragment.from_row(row)
                for row in _owned(rows, user_id, avatar_id)
            ]

        return await self._resilience.with_caching(
            "user_memories",
            cache_key("user_memories", params),
            lambda: self._resilience.with_retry(
                _list, "database", {**params, "operation": "get_user_memories"}
            ),
            params,
        )

    async def get_memory_fragment(
        self, fragment_id: str, user_id: str
    ) -> MemoryFragment | None:
        """One fragment, or ``None`` when it is missing or someone else's."""
        require_user_id(user_id)
        params = {"fragment_id": fragment_id, "user_id": user_id}

        async def _get() -> MemoryFragment | None:
            try:
                row = await self._datastore.get(fragment_id, user_id)
            except StoreError as exc:
                if exc.code == NO_ROWS:
                    return None
                raise
            if row.get("user_id") != user_id:
                return None
            return MemoryFragment.from_row(row)

        return await self._resilience.with_caching(
            "memory_fragment",
            cache_key("memory_fragment", params),
            lambda: self._resilience.with_retry(
                _get, "database", {**params, "operation": "get_memory_fragment"}
            ),
            params,
        )

    async def search_memories_by_text(
        self,
        text: str,
        user_id: str,
        limit: int | None = None,
        avatar_id: str | None = None,
    ) -> list[MemoryFragment]:
        """Keyword search over the user's fragments, newest first; ``[]`` on failure."""
        limit = self._config.default_limit if limit is None else limit
        context = {
            "user_id": user_id,
            "avatar_id": avatar_id,
            "search_text": text[:100],
            "limit": limit,
        }

        async def _search() -> list[MemoryFragment]:
            require_user_id(user_id)
            rows = await self._resilience.with_retry(
                lambda: self._datastore.text_search(user_id, text, limit, avatar_id),
                "database",
                {**context, "operation": "text_search"},
            )
            return [
                MemoryFragment.from_row(row)
                for row in _owned(rows, user_id, avatar_id)
            ]

        return await self._resilience.with_graceful_degradation(
            _search, [], "search_memories_by_text", context
        )

    async def get_memory_stats(
        self, user_id: str, avatar_id: str | None = None
    ) -> MemoryStats:
        require_user_id(user_id)
        params = {"user_id": user_id, "avatar_id": avatar_id}

        async def _stats() -> MemoryStats:
            total = await self._datastore.count(user_id, avatar_id)
            if not total:
                return MemoryStats()
            oldest = await self._datastore.list(
                user_id,
                limit=1,
                order_by="created_at",
                descending=False,
                avatar_id=avatar_id,
            )
            newest = await self._datastore.list(
                user_id,
                limit=1,
                order_by="created_at",
                descending=True,
                avatar_id=avatar_id,
            )
            return MemoryStats(
                total_fragments=total,
                oldest_memory=oldest[0]["created_at"] if oldest else None,
                newest_memory=newest[0]["created_at"] if newest else None,
            )

        return await self._resilience.with_caching(
            "memory_stats",
            cache_key("memory_stats", params),
            lambda: self._resilience.with_retry(
                _stats, "database", {**params, "operation": "get_memory_stats"}
            ),
            params,
        )
