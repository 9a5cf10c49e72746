"""Memory store: embed fragments and persist them in the datastore.

Embedding calls run under the ``openai`` retry profile; datastore writes
run under the ``database`` profile. Every successful mutation drops the
owning user's cached reads.
"""

from __future__ import annotations

import logging
from typing import Any

from recallguard.cache import cache_key
from recallguard.config import EmbeddingConfig
from recallguard.errors import NO_ROWS
from recallguard.errors import MemoryErrorKind
from recallguard.errors import MemoryOperationError
from recallguard.errors import StoreError
from recallguard.memory.schemas import ConversationContext
from recallguard.memory.schemas import MemoryFragment
from recallguard.providers import EmbeddingProvider
from recallguard.resilience.context import ResilienceContext
from recallguard.storage.base import FragmentDatastore

logger = logging.getLogger(__name__)


def require_user_id(user_id: str) -> None:
    if not user_id or not user_id.strip():
        raise MemoryOperationError(
            MemoryErrorKind.INVALID_USER_ID, "user_id is required"
        )


def _require_text(text: str) -> None:
    if not text or not text.strip():
        raise MemoryOperationError(
            MemoryErrorKind.INVALID_INPUT, "fragment_text must not be empty"
        )


class MemoryStore:
    """Write path for memory fragments."""

    def __init__(
        self,
        datastore: FragmentDatastore,
        embeddings: EmbeddingProvider,
        resilience: ResilienceContext,
        config: EmbeddingConfig | None = None,
    ) -> None:
        self._datastore = datastore
        self._embeddings = embeddings
        self._resilience = resilience
        self._config = config or EmbeddingConfig()

    # -- embeddings --

    def _check_vector(self, vector: Any) -> list[float]:
        if (
            not isinstance(vector, list)
            or len(vector) != self._config.dimension
            or not all(
                isinstance(v, (int, float)) and not isinstance(v, bool) for v in vector
            )
        ):
            raise MemoryOperationError(
                MemoryErrorKind.EMBEDDING_FAILED,
                "Malformed embedding returned by provider",
                context={
                    "expected_dimension": self._config.dimension,
                    "actual_dimension": (
                        len(vector) if isinstance(vector, list) else None
                    ),
                },
            )
        return [float(v) for v in vector]

    async def generate_embedding(self, text: str) -> list[float]:
        """Embed one text; cached for an hour per model and text."""
        _require_text(text)

        async def _embed() -> list[float]:
            vectors = await self._embeddings.embed([text])
            if not vectors:
                raise MemoryOperationError(
                    MemoryErrorKind.EMBEDDING_FAILED,
                    "No embedding data returned by provider",
                )
            return self._check_vector(vectors[0])

        key = cache_key("embeddings", {"model": self._config.model, "text": text})
        return await self._resilience.with_caching(
            "embeddings",
            key,
            lambda: self._resilience.with_retry(
                _embed,
                "openai",
                {"operation": "generate_embedding", "text_length": len(text)},
            ),
        )

    async def batch_generate_embeddings(self, texts: list[str]) -> list[list[float]]:
        """Embed many texts, ``batch_size`` per request, in input order."""
        for text in texts:
            _require_text(text)

        batch_size = self._config.batch_size
        vectors: list[list[float]] = []
        for start in range(0, len(texts), batch_size):
            chunk = texts[start : start + batch_size]

            async def _embed_chunk(chunk: list[str] = chunk) -> list[list[float]]:
                result = await self._embeddings.embed(chunk)
                if result is None or len(result) != len(chunk):
                    raise MemoryOperationError(
                        MemoryErrorKind.EMBEDDING_FAILED,
                        "Incomplete batch embedding response from provider",
                        context={
                            "expected": len(chunk),
                            "received": len(result or []),
                        },
                    )
                return [self._check_vector(v) for v in result]

            vectors.extend(
                await self._resilience.with_retry(
                    _embed_chunk,
                    "openai",
                    {
                        "operation": "batch_generate_embeddings",
                        "batch_size": len(chunk),
                    },
                )
            )
            if start + batch_size < len(texts):
                await self._resilience.pause(self._config.batch_delay_seconds)
        return vectors

    # -- writes --

    async def store_memory_fragment(self, fragment: MemoryFragment) -> str:
        """Persist one fragment (embedding it first if needed); return its id."""
        ids = await self.batch_store_memory_fragments([fragment])
        return ids[0]

    async def batch_store_memory_fragments(
        self, fragments: list[MemoryFragment]
    ) -> list[str]:
        """Persist *fragments* in one insert; ids are returned in input order."""
        if not fragments:
            return []
        for fragment in fragments:
            require_user_id(fragment.user_id)
            _require_text(fragment.fragment_text)

        missing = [i for i, f in enumerate(fragments) if f.embedding is None]
        generated: dict[int, list[float]] = {}
        if len(missing) == 1:
            index = missing[0]
            generated[index] = await self.generate_embedding(
                fragments[index].fragment_text
            )
        elif missing:
            vectors = await self.batch_generate_embeddings(
                [fragments[i].fragment_text for i in missing]
            )
            generated = dict(zip(missing, vectors))

        rows = []
        for index, fragment in enumerate(fragments):
            row = fragment.to_row()
            if index in generated:
                row["embedding"] = generated[index]
            rows.append(row)

        user_ids = sorted({f.user_id for f in fragments})
        context = {
            "operation": "batch_store_memory_fragments",
            "fragment_count": len(rows),
            "user_id": user_ids[0],
        }

        async def _insert() -> list[str]:
            ids = await self._datastore.insert(rows)
            if ids is None or len(ids) != len(rows):
                raise MemoryOperationError(
                    MemoryErrorKind.STORE_QUERY,
                    "Incomplete batch insertion response",
                    context={"expected": len(rows), "received": len(ids or [])},
                )
            return list(ids)

        ids = await self._resilience.with_retry(_insert, "database", context)
        for user_id, avatar_id in {(f.user_id, f.avatar_id) for f in fragments}:
            self._resilience.cache.invalidate_user(user_id, avatar_id)
        logger.info("Stored %d memory fragments", len(ids))
        return ids

    async def update_memory_fragment(
        self,
        fragment_id: str,
        user_id: str,
        fragment_text: str | None = None,
        conversation_context: ConversationContext | dict[str, Any] | None = None,
    ) -> bool:
        """Update one of *user_id*'s fragments.

        A new text is re-embedded. Returns ``False`` when no fragment with
        that id belongs to the user; nothing is changed in that case.
        """
        require_user_id(user_id)
        values: dict[str, Any] = {}
        if fragment_text is not None:
            _require_text(fragment_text)
            # Ownership is checked before the text is embedded
            if not await self._owns(fragment_id, user_id):
                return False
            values["fragment_text"] = fragment_text.strip()
            values["embedding"] = await self.generate_embedding(values["fragment_text"])
        if conversation_context is not None:
            if isinstance(conversation_context, ConversationContext):
                conversation_context = conversation_context.model_dump()
            values["conversation_context"] = conversation_context

        updated = await self._resilience.with_retry(
            lambda: self._datastore.update(fragment_id, user_id, values),
            "database",
            {
                "operation": "update_memory_fragment",
                "fragment_id": fragment_id,
                "user_id": user_id,
                "has_text_update": fragment_text is not None,
            },
        )
        self._resilience.cache.invalidate_user(user_id)
        return bool(updated)

    async def _owns(self, fragment_id: str, user_id: str) -> bool:
        async def _check() -> bool:
            try:
                row = await self._datastore.get(fragment_id, user_id)
            except StoreError as exc:
                if exc.code == NO_ROWS:
                    return False
                raise
            return row.get("user_id") == user_id

        return await self._resilience.with_retry(
            _check,
            "database",
            {
                "operation": "check_fragment_owner",
                "fragment_id": fragment_id,
                "user_id": user_id,
            },
        )

    async def delete_memory_fragment(self, fragment_id: str, user_id: str) -> bool:
        require_user_id(user_id)
        deleted = await self._resilience.with_retry(
            lambda: self._datastore.delete(fragment_id, user_id),
            "database",
            {
                "operation": "delete_memory_fragment",
                "fragment_id": fragment_id,
                "user_id": user_id,
            },
        )
        self._resilience.cache.invalidate_user(user_id)
        return bool(deleted)

    async def delete_all_user_memories(
        self, user_id: str, avatar_id: str | None = None
    ) -> int:
        """Delete the user's fragments, only those of *avatar_id* when given."""
        require_user_id(user_id)
        deleted = await self._resilience.with_retry(
            lambda: self._datastore.delete_all(user_id, avatar_id),
            "database",
            {
                "operation": "delete_all_user_memories",
                "user_id": user_id,
                "avatar_id": avatar_id,
            },
        )
        self._resilience.cache.invalidate_user(user_id, avatar_id)
        logger.info(
            "Deleted %d memories for user %s (avatar %s)", deleted, user_id, avatar_id
        )
        return int(deleted)
