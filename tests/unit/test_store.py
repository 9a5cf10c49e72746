"""Memory store tests."""

from __future__ import annotations

import pytest

from recallguard.cache import cache_key
from recallguard.config import EmbeddingConfig
from recallguard.errors import CircuitOpenError
from recallguard.errors import MemoryErrorKind
from recallguard.errors import MemoryOperationError
from recallguard.errors import ProviderError
from recallguard.errors import StoreError
from recallguard.memory import ConversationContext
from recallguard.memory import MemoryFragment
from recallguard.memory import MemoryStore
from tests.helpers.fakes import EMBEDDING_DIMENSION
from tests.helpers.fakes import topic_vector


@pytest.fixture()
def store(datastore, embeddings, resilience, settings) -> MemoryStore:
    return MemoryStore(datastore, embeddings, resilience, settings.embedding)


def _fragment(text: str, user_id: str = "u1", **kwargs) -> MemoryFragment:
    return MemoryFragment(user_id=user_id, fragment_text=text, **kwargs)


class TestGenerateEmbedding:
    async def test_returns_vector(self, store):
        assert await store.generate_embedding("User likes hiking") == topic_vector(
            "User likes hiking"
        )

    async def test_cached_per_text(self, store, embeddings):
        await store.generate_embedding("same text")
        await store.generate_embedding("same text")
        await store.generate_embedding("other text")
        assert embeddings.calls == [["same text"], ["other text"]]

    async def test_empty_text_rejected(self, store, embeddings):
        with pytest.raises(MemoryOperationError) as exc_info:
            await store.generate_embedding("  ")
        assert exc_info.value.kind is MemoryErrorKind.INVALID_INPUT
        assert embeddings.calls == []

    async def test_wrong_dimension(self, store, embeddings):
        embeddings.override = [[0.1, 0.2]]
        with pytest.raises(MemoryOperationError) as exc_info:
            await store.generate_embedding("text")
        assert exc_info.value.kind is MemoryErrorKind.EMBEDDING_FAILED
        assert exc_info.value.context["actual_dimension"] == 2

    async def test_non_numeric_vector(self, store, embeddings):
        embeddings.override = [["x"] * EMBEDDING_DIMENSION]
        with pytest.raises(MemoryOperationError) as exc_info:
            await store.generate_embedding("text")
        assert exc_info.value.kind is MemoryErrorKind.EMBEDDING_FAILED

    async def test_empty_payload(self, store, embeddings):
        embeddings.override = []
        with pytest.raises(MemoryOperationError) as exc_info:
            await store.generate_embedding("text")
        assert exc_info.value.kind is MemoryErrorKind.EMBEDDING_FAILED

    async def test_retries_provider_errors(self, store, embeddings, sleeper):
        embeddings.failures = [ProviderError("busy", status=429)]
        assert await store.generate_embedding("text") == topic_vector("text")
        assert len(embeddings.calls) == 2
        assert len(sleeper.delays) == 1


class TestBatchGenerateEmbeddings:
    async def test_chunks_requests(self, datastore, embeddings, resilience, sleeper):
        config = EmbeddingConfig(dimension=EMBEDDING_DIMENSION, batch_size=2)
        store = MemoryStore(datastore, embeddings, resilience, config)
        texts = ["a dog", "a cat", "my job", "pizza", "guitar"]
        vectors = await store.batch_generate_embeddings(texts)
        assert vectors == [topic_vector(t) for t in texts]
        assert embeddings.calls == [["a dog", "a cat"], ["my job", "pizza"], ["guitar"]]
        assert sleeper.delays == [0.05, 0.05]

    async def test_default_batch_of_one_hundred(self, store, embeddings):
        texts = [f"text {i}" for i in range(150)]
        await store.batch_generate_embeddings(texts)
        assert [len(c) for c in embeddings.calls] == [100, 50]

    async def test_count_mismatch(self, store, embeddings):
        embeddings.override = [topic_vector("only one")]
        with pytest.raises(MemoryOperationError) as exc_info:
            await store.batch_generate_embeddings(["a", "b"])
        assert exc_info.value.kind is MemoryErrorKind.EMBEDDING_FAILED
        assert exc_info.value.context["received"] == 1


class TestStore:
    async def test_store_single_fragment(self, store, datastore):
        fragment_id = await store.store_memory_fragment(_fragment("User has a dog"))
        row = datastore.rows[fragment_id]
        assert row["user_id"] == "u1"
        assert row["embedding"] == topic_vector("User has a dog")

    async def test_batch_store_keeps_order(self, store, datastore, embeddings):
        fragments = [_fragment("User has a dog"), _fragment("User plays guitar")]
        ids = await store.batch_store_memory_fragments(fragments)
        assert [datastore.rows[i]["fragment_text"] for i in ids] == [
            "User has a dog",
            "User plays guitar",
        ]
        assert embeddings.calls == [["User has a dog", "User plays guitar"]]

    async def test_existing_embedding_is_kept(self, store, datastore, embeddings):
        vector = [1.0] * EMBEDDING_DIMENSION
        [fragment_id] = await store.batch_store_memory_fragments(
            [_fragment("User has a dog", embedding=vector)]
        )
        assert datastore.rows[fragment_id]["embedding"] == vector
        assert embeddings.calls == []

    async def test_context_is_serialized(self, store, datastore):
        context = ConversationContext(
            timestamp="2026-01-01T00:00:00+00:00", emotional_tone="positive"
        )
        fragment_id = await store.store_memory_fragment(
            _fragment("User loves tea", conversation_context=context)
        )
        assert datastore.rows[fragment_id]["conversation_context"] == {
            "timestamp": "2026-01-01T00:00:00+00:00",
            "message_context": "",
            "emotional_tone": "positive",
        }

    async def test_empty_batch(self, store, datastore):
        assert await store.batch_store_memory_fragments([]) == []
        assert datastore.calls == []

    async def test_validation_happens_before_any_write(self, store, datastore, embeddings):
        with pytest.raises(MemoryOperationError) as exc_info:
            await store.batch_store_memory_fragments(
                [_fragment("ok"), _fragment("", user_id="u1")]
            )
        assert exc_info.value.kind is MemoryErrorKind.INVALID_INPUT
        assert embeddings.calls == []
        assert datastore.calls == []

    async def test_blank_user_rejected(self, store):
        with pytest.raises(MemoryOperationError) as exc_info:
            await store.store_memory_fragment(_fragment("text", user_id=" "))
        assert exc_info.value.kind is MemoryErrorKind.INVALID_USER_ID

    async def test_incomplete_insert(self, store, datastore, monkeypatch):
        async def short_insert(rows):
            return []

        monkeypatch.setattr(datastore, "insert", short_insert)
        with pytest.raises(MemoryOperationError) as exc_info:
            await store.store_memory_fragment(_fragment("User has a dog"))
        assert exc_info.value.kind is MemoryErrorKind.STORE_QUERY

    async def test_connection_error_retried(self, store, datastore, sleeper):
        datastore.failures["insert"] = [StoreError("down", code="08006")]
        await store.store_memory_fragment(_fragment("User has a dog"))
        assert datastore.calls.count("insert") == 2
        assert len(datastore.rows) == 1

    async def test_embedding_failure_does_not_touch_database_breaker(
        self, store, embeddings, resilience
    ):
        embeddings.failures = [ProviderError("quota", status=402)]
        with pytest.raises(MemoryOperationError):
            await store.store_memory_fragment(_fragment("User has a dog"))
        assert resilience.breakers.state("database") is None
        assert resilience.breakers.state("openai").failure_count == 1

    async def test_store_invalidates_user_cache(self, store, resilience):
        mine = cache_key("user_memories", {"user_id": "u1"})
        theirs = cache_key("user_memories", {"user_id": "u2"})
        resilience.cache.set(mine, ["stale"])
        resilience.cache.set(theirs, ["kept"])
        await store.store_memory_fragment(_fragment("User has a dog"))
        assert not resilience.cache.contains(mine)
        assert resilience.cache.contains(theirs)


class TestUpdateDelete:
    async def test_update_text_reembeds(self, store, datastore):
        fragment_id = datastore.seed("u1", "User has a dog", topic_vector("dog"))
        assert await store.update_memory_fragment(
            fragment_id, "u1", fragment_text=" User plays guitar "
        )
        row = datastore.rows[fragment_id]
        assert row["fragment_text"] == "User plays guitar"
        assert row["embedding"] == topic_vector("User plays guitar")

    async def test_update_context_only(self, store, datastore, embeddings):
        fragment_id = datastore.seed("u1", "User has a dog")
        assert await store.update_memory_fragment(
            fragment_id, "u1", conversation_context={"timestamp": "t"}
        )
        assert datastore.rows[fragment_id]["conversation_context"] == {"timestamp": "t"}
        assert embeddings.calls == []

    async def test_update_foreign_fragment_is_noop(self, store, datastore):
        fragment_id = datastore.seed("u2", "User has a dog")
        assert not await store.update_memory_fragment(
            fragment_id, "u1", fragment_text="hijacked"
        )
        assert datastore.rows[fragment_id]["fragment_text"] == "User has a dog"

    async def test_update_of_unowned_fragment_skips_embedding(
        self, store, datastore, embeddings, resilience
    ):
        foreign = datastore.seed("u2", "User has a dog")
        assert not await store.update_memory_fragment(
            foreign, "u1", fragment_text="User has a cat"
        )
        assert not await store.update_memory_fragment(
            "missing", "u1", fragment_text="User has a cat"
        )
        assert embeddings.calls == []
        assert "update" not in datastore.calls
        assert resilience.breakers.state("openai") is None

    async def test_delete(self, store, datastore):
        fragment_id = datastore.seed("u1", "User has a dog")
        assert await store.delete_memory_fragment(fragment_id, "u1")
        assert fragment_id not in datastore.rows
        assert not await store.delete_memory_fragment(fragment_id, "u1")

    async def test_delete_foreign_fragment_is_noop(self, store, datastore):
        fragment_id = datastore.seed("u2", "User has a dog")
        assert not await store.delete_memory_fragment(fragment_id, "u1")
        assert fragment_id in datastore.rows

    async def test_delete_all(self, store, datastore, resilience):
        datastore.seed("u1", "a")
        datastore.seed("u1", "b")
        datastore.seed("u2", "c")
        key = cache_key("memory_stats", {"user_id": "u1"})
        resilience.cache.set(key, "stale")
        assert await store.delete_all_user_memories("u1") == 2
        assert [r["user_id"] for r in datastore.rows.values()] == ["u2"]
        assert not resilience.cache.contains(key)

    async def test_delete_all_for_one_avatar(self, store, datastore, resilience):
        datastore.seed("u1", "a", avatar_id="a1")
        kept = datastore.seed("u1", "b", avatar_id="a2")
        other_avatar = cache_key("memory_stats", {"user_id": "u1", "avatar_id": "a2"})
        same_avatar = cache_key("memory_stats", {"user_id": "u1", "avatar_id": "a1"})
        resilience.cache.set(other_avatar, "kept")
        resilience.cache.set(same_avatar, "stale")
        assert await store.delete_all_user_memories("u1", avatar_id="a1") == 1
        assert list(datastore.rows) == [kept]
        assert resilience.cache.contains(other_avatar)
        assert not resilience.cache.contains(same_avatar)

    async def test_avatar_is_persisted(self, store, datastore):
        fragment_id = await store.store_memory_fragment(
            _fragment("User has a dog", avatar_id="a1")
        )
        assert datastore.rows[fragment_id]["avatar_id"] == "a1"

    async def test_database_breaker_opens_and_rejects(self, store, datastore):
        datastore.failures["delete"] = [
            StoreError("down", code="08006") for _ in range(6)
        ]
        # Two attempts per call; the fifth failure opens the breaker mid-retry
        for _ in range(3):
            with pytest.raises(MemoryOperationError):
                await store.delete_memory_fragment("x", "u1")
        with pytest.raises(CircuitOpenError):
            await store.delete_memory_fragment("x", "u1")
        assert datastore.calls.count("delete") == 5
