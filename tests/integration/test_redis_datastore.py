"""Integration tests for the Redis fragment datastore."""

from __future__ import annotations

import pytest

from recallguard.errors import NO_ROWS
from recallguard.errors import StoreError
from recallguard.storage import FragmentDatastore
from recallguard.storage import RedisFragmentDatastore
from recallguard.storage import cosine_similarity
from tests.helpers.fakes import FakeClock


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(redis_client, clock) -> RedisFragmentDatastore:
    return RedisFragmentDatastore(redis_client, prefix="test", clock=clock)


def _row(text: str, user_id: str = "u1", embedding=None, avatar_id=None) -> dict:
    return {
        "user_id": user_id,
        "avatar_id": avatar_id,
        "fragment_text": text,
        "embedding": embedding,
        "conversation_context": {"timestamp": "2026-01-01T00:00:00+00:00"},
    }


async def _insert_one(
    store, clock, text, user_id="u1", embedding=None, avatar_id=None
) -> str:
    [fragment_id] = await store.insert([_row(text, user_id, embedding, avatar_id)])
    clock.advance(1.0)
    return fragment_id


class TestInsertGet:
    async def test_satisfies_protocol(self, store):
        assert isinstance(store, FragmentDatastore)

    async def test_insert_and_get(self, store):
        [fragment_id] = await store.insert([_row("User has a dog", embedding=[1.0, 0.0])])
        row = await store.get(fragment_id, "u1")
        assert row["id"] == fragment_id
        assert row["fragment_text"] == "User has a dog"
        assert row["embedding"] == [1.0, 0.0]
        assert row["conversation_context"]["timestamp"].startswith("2026")
        assert row["created_at"] == row["updated_at"]
        assert not any(key.startswith("_") for key in row)

    async def test_batch_insert_keeps_order(self, store):
        ids = await store.insert([_row("a"), _row("b"), _row("c")])
        assert len(set(ids)) == 3
        rows = await store.list("u1", descending=False)
        assert [r["id"] for r in rows] == ids

    async def test_empty_insert(self, store):
        assert await store.insert([]) == []

    async def test_get_missing(self, store):
        with pytest.raises(StoreError) as exc_info:
            await store.get("nope", "u1")
        assert exc_info.value.code == NO_ROWS

    async def test_get_foreign(self, store):
        [fragment_id] = await store.insert([_row("secret", user_id="u2")])
        with pytest.raises(StoreError) as exc_info:
            await store.get(fragment_id, "u1")
        assert exc_info.value.code == NO_ROWS


class TestUpdateDelete:
    async def test_update_text_reindexes(self, store, clock):
        fragment_id = await _insert_one(store, clock, "User plays guitar")
        assert await store.update(fragment_id, "u1", {"fragment_text": "User plays piano"})
        row = await store.get(fragment_id, "u1")
        assert row["fragment_text"] == "User plays piano"
        assert row["updated_at"] > row["created_at"]
        assert await store.text_search("u1", "guitar", 10) == []
        assert [r["id"] for r in await store.text_search("u1", "piano", 10)] == [
            fragment_id
        ]

    async def test_update_foreign_is_noop(self, store):
        [fragment_id] = await store.insert([_row("mine", user_id="u2")])
        assert not await store.update(fragment_id, "u1", {"fragment_text": "x"})
        assert (await store.get(fragment_id, "u2"))["fragment_text"] == "mine"

    async def test_delete(self, store):
        [fragment_id] = await store.insert([_row("User likes tea")])
        assert await store.delete(fragment_id, "u1")
        assert not await store.delete(fragment_id, "u1")
        assert await store.count("u1") == 0
        assert await store.text_search("u1", "tea", 10) == []

    async def test_delete_foreign_is_noop(self, store):
        [fragment_id] = await store.insert([_row("mine", user_id="u2")])
        assert not await store.delete(fragment_id, "u1")
        assert await store.count("u2") == 1

    async def test_delete_all(self, store, redis_client):
        await store.insert([_row("User likes tea"), _row("User likes coffee")])
        await store.insert([_row("User likes tea", user_id="u2")])
        assert await store.delete_all("u1") == 2
        assert await store.count("u1") == 0
        assert await store.count("u2") == 1
        leftover = [k async for k in redis_client.scan_iter(match="test:user:u1:*")]
        assert leftover == []

    @pytest.mark.parametrize("greedy_id", ["a*", "a?ice", "[a]lice"])
    async def test_delete_all_keeps_other_users_keyword_index(self, store, greedy_id):
        await store.insert([_row("User loves hiking", user_id="alice")])
        await store.insert([_row("User loves chess", user_id=greedy_id)])
        assert await store.delete_all(greedy_id) == 1
        hits = await store.text_search("alice", "hiking", 10)
        assert [r["fragment_text"] for r in hits] == ["User loves hiking"]
        assert await store.count("alice") == 1
        assert await store.text_search(greedy_id, "chess", 10) == []

    async def test_delete_all_for_one_avatar(self, store, clock):
        await _insert_one(store, clock, "User loves hiking", avatar_id="a1")
        kept = await _insert_one(store, clock, "User went hiking", avatar_id="a2")
        assert await store.delete_all("u1", avatar_id="a1") == 1
        assert [r["id"] for r in await store.list("u1")] == [kept]
        assert [r["id"] for r in await store.text_search("u1", "hiking", 10)] == [kept]


class TestSearch:
    async def test_match_fragments(self, store, clock):
        near = await _insert_one(store, clock, "near", embedding=[1.0, 0.1])
        await _insert_one(store, clock, "far", embedding=[0.0, 1.0])
        await _insert_one(store, clock, "no vector")
        await _insert_one(store, clock, "other", user_id="u2", embedding=[1.0, 0.1])
        rows = await store.match_fragments([1.0, 0.0], 0.7, 10, "u1")
        assert [r["id"] for r in rows] == [near]
        assert rows[0]["similarity"] == pytest.approx(
            cosine_similarity([1.0, 0.0], [1.0, 0.1])
        )

    async def test_match_count(self, store, clock):
        for i in range(5):
            await _insert_one(store, clock, f"v{i}", embedding=[1.0, i * 0.1])
        rows = await store.match_fragments([1.0, 0.0], 0.5, 2, "u1")
        assert [r["fragment_text"] for r in rows] == ["v0", "v1"]

    async def test_text_search_newest_first_and_scoped(self, store, clock):
        old = await _insert_one(store, clock, "User loves hiking")
        new = await _insert_one(store, clock, "User went hiking in the Alps")
        await _insert_one(store, clock, "User loves hiking", user_id="u2")
        rows = await store.text_search("u1", "Hiking plans?", 10)
        assert [r["id"] for r in rows] == [new, old]

    async def test_text_search_ignores_stopwords(self, store, clock):
        await _insert_one(store, clock, "User likes the sea")
        assert await store.text_search("u1", "the", 10) == []


class TestList:
    async def test_pagination(self, store, clock):
        ids = [await _insert_one(store, clock, f"fact {i}") for i in range(5)]
        page = await store.list("u1", limit=2, offset=1)
        assert [r["id"] for r in page] == [ids[3], ids[2]]
        assert len(await store.list("u1", limit=0)) == 5

    async def test_order_by_updated_at(self, store, clock):
        first = await _insert_one(store, clock, "first")
        second = await _insert_one(store, clock, "second")
        await store.update(first, "u1", {"conversation_context": None})
        rows = await store.list("u1", order_by="updated_at")
        assert [r["id"] for r in rows] == [first, second]

    async def test_invalid_column(self, store):
        with pytest.raises(StoreError) as exc_info:
            await store.list("u1", order_by="fragment_text")
        assert exc_info.value.code == "42703"

    async def test_clear_removes_prefix_only(self, store, redis_client):
        await store.insert([_row("a")])
        await redis_client.set("unrelated", "1")
        await store.clear()
        assert await store.count("u1") == 0
        assert await redis_client.get("unrelated") == b"1"


class TestAvatarScope:
    async def test_filters(self, store, clock):
        first = await _insert_one(
            store, clock, "User loves hiking", embedding=[1.0, 0.0], avatar_id="a1"
        )
        second = await _insert_one(
            store, clock, "User went hiking", embedding=[1.0, 0.0], avatar_id="a2"
        )
        third = await _insert_one(
            store, clock, "User plans hiking", embedding=[1.0, 0.0], avatar_id="a1"
        )

        assert (await store.get(first, "u1"))["avatar_id"] == "a1"
        assert await store.count("u1") == 3
        assert await store.count("u1", avatar_id="a1") == 2

        page = await store.list("u1", limit=1, offset=1, avatar_id="a1")
        assert [r["id"] for r in page] == [first]
        oldest = await store.list("u1", descending=False, avatar_id="a1")
        assert [r["id"] for r in oldest] == [first, third]

        matched = await store.match_fragments([1.0, 0.0], 0.5, 10, "u1", "a2")
        assert [r["id"] for r in matched] == [second]
        hits = await store.text_search("u1", "hiking", 10, avatar_id="a1")
        assert [r["id"] for r in hits] == [third, first]
