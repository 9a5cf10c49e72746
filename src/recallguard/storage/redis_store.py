"""Redis-backed fragment datastore.

Layout (``P`` is the configured key prefix):

* ``P:fragment:{id}``: the row as a JSON string;
* ``P:user:{user_id}:created``: sorted set of the user's fragment ids,
  scored by creation time;
* ``P:user:{user_id}:keyword:{word}``: sets of fragment ids for keyword
  search;
* ``P:frag_kw:{id}``: the keywords a fragment was indexed under, so that
  deletes and text edits can clean the exact keyword sets.

Avatar filters are applied in process over the user's fragments.

Similarity search ranks the user's fragments by cosine similarity in
process; there is no approximate index.
"""

from __future__ import annotations

import json
import logging
import math
import re
import time
import uuid
from collections.abc import Callable
from datetime import datetime
from datetime import timezone
from typing import Any

from redis.asyncio import Redis  # type: ignore[import-untyped]

from recallguard.errors import NO_ROWS
from recallguard.errors import StoreError
from recallguard.storage.base import ORDERABLE_COLUMNS
from recallguard.storage.base import FragmentRow

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

_WORD_RE = re.compile(r"[a-z0-9]+")

_STOPWORDS = frozenset(
    {
        "a",
        "an",
        "and",
        "are",
        "about",
        "do",
        "for",
        "i",
        "in",
        "is",
        "it",
        "me",
        "my",
        "of",
        "on",
        "or",
        "the",
        "to",
        "was",
        "what",
        "with",
        "you",
    }
)


def _tokenize(text: str) -> set[str]:
    """Extract lowercase alphanumeric tokens from *text*, minus stopwords."""
    return set(_WORD_RE.findall(text.lower())) - _STOPWORDS


def _decode(value: bytes | str) -> str:
    return value.decode() if isinstance(value, bytes) else value


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


# ---------------------------------------------------------------------------
# RedisFragmentDatastore
# ---------------------------------------------------------------------------

_CLEAR_BATCH_SIZE = 100


class RedisFragmentDatastore:
    """``FragmentDatastore`` implementation on redis.asyncio."""

    def __init__(
        self,
        redis: Redis,
        *,
        prefix: str = "recallguard",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis
        self._prefix = prefix
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> RedisFragmentDatastore:
        return cls(Redis.from_url(url), **kwargs)

    # -- keys --

    def _fragment_key(self, fragment_id: str) -> str:
        return f"{self._prefix}:fragment:{fragment_id}"

    def _created_key(self, user_id: str) -> str:
        return f"{self._prefix}:user:{user_id}:created"

    def _keyword_key(self, user_id: str, word: str) -> str:
        return f"{self._prefix}:user:{user_id}:keyword:{word}"

    def _frag_kw_key(self, fragment_id: str) -> str:
        return f"{self._prefix}:frag_kw:{fragment_id}"

    # -- write --

    async def insert(self, rows: list[FragmentRow]) -> list[str]:
        if not rows:
            return []
        now = self._clock()
        ids: list[str] = []

        pipe = self._redis.pipeline()
        for offset, row in enumerate(rows):
            fragment_id = str(uuid.uuid4())
            # Sub-microsecond offsets keep batch inserts in input order
            created = now + offset * 1e-6
            record = {
                "id": fragment_id,
                "user_id": row["user_id"],
                "avatar_id": row.get("avatar_id"),
                "fragment_text": row["fragment_text"],
                "embedding": row.get("embedding"),
                "conversation_context": row.get("conversation_context"),
                "created_at": _iso(created),
                "updated_at": _iso(created),
                "_created_ts": created,
            }
            keywords = sorted(_tokenize(record["fragment_text"]))
            pipe.set(self._fragment_key(fragment_id), json.dumps(record))
            pipe.zadd(self._created_key(record["user_id"]), {fragment_id: created})
            pipe.set(self._frag_kw_key(fragment_id), json.dumps(keywords))
            for word in keywords:
                pipe.sadd(self._keyword_key(record["user_id"], word), fragment_id)
            ids.append(fragment_id)
        await pipe.execute()

        logger.debug("Inserted %d fragments", len(ids))
        return ids

    async def update(self, fragment_id: str, user_id: str, values: FragmentRow) -> bool:
        record = await self._load(fragment_id, user_id)
        if record is None:
            return False

        old_keywords = await self._indexed_keywords(fragment_id, record)
        for column in ("fragment_text", "embedding", "conversation_context"):
            if column in values:
                record[column] = values[column]
        record["updated_at"] = _iso(self._clock())

        pipe = self._redis.pipeline()
        pipe.set(self._fragment_key(fragment_id), json.dumps(record))
        if "fragment_text" in values:
            new_keywords = sorted(_tokenize(record["fragment_text"]))
            for word in set(old_keywords) - set(new_keywords):
                pipe.srem(self._keyword_key(user_id, word), fragment_id)
            for word in new_keywords:
                pipe.sadd(self._keyword_key(user_id, word), fragment_id)
            pipe.set(self._frag_kw_key(fragment_id), json.dumps(new_keywords))
        await pipe.execute()
        return True

    async def delete(self, fragment_id: str, user_id: str) -> bool:
        record = await self._load(fragment_id, user_id)
        if record is None:
            return False
        keywords = await self._indexed_keywords(fragment_id, record)

        pipe = self._redis.pipeline()
        pipe.delete(self._fragment_key(fragment_id))
        pipe.delete(self._frag_kw_key(fragment_id))
        pipe.zrem(self._created_key(user_id), fragment_id)
        for word in keywords:
            pipe.srem(self._keyword_key(user_id, word), fragment_id)
        await pipe.execute()
        return True

    async def delete_all(self, user_id: str, avatar_id: str | None = None) -> int:
        records = await self._user_records(user_id, avatar_id)
        if not records:
            return 0

        kw_pipe = self._redis.pipeline()
        for record in records:
            kw_pipe.get(self._frag_kw_key(record["id"]))
        kw_results = await kw_pipe.execute()

        pipe = self._redis.pipeline()
        for record, kw_data in zip(records, kw_results):
            fragment_id = record["id"]
            keywords = (
                json.loads(kw_data)
                if kw_data is not None
                else sorted(_tokenize(record.get("fragment_text", "")))
            )
            pipe.delete(self._fragment_key(fragment_id))
            pipe.delete(self._frag_kw_key(fragment_id))
            pipe.zrem(self._created_key(user_id), fragment_id)
            for word in keywords:
                pipe.srem(self._keyword_key(user_id, word), fragment_id)
        if avatar_id is None:
            pipe.delete(self._created_key(user_id))
        await pipe.execute()

        logger.info(
            "Deleted %d fragments for user %s (avatar %s)",
            len(records),
            user_id,
            avatar_id,
        )
        return len(records)

    # -- read --

    async def get(self, fragment_id: str, user_id: str) -> FragmentRow:
        record = await self._load(fragment_id, user_id)
        if record is None:
            raise StoreError(
                f"No fragment {fragment_id} for user {user_id}", code=NO_ROWS
            )
        return _public(record)

    async def match_fragments(
        self,
        query_embedding: list[float],
        match_threshold: float,
        match_count: int,
        target_user_id: str,
        target_avatar_id: str | None = None,
    ) -> list[FragmentRow]:
        records = await self._user_records(target_user_id, target_avatar_id)
        scored: list[FragmentRow] = []
        for record in records:
            embedding = record.get("embedding")
            if not embedding:
                continue
            similarity = cosine_similarity(query_embedding, embedding)
            if similarity > match_threshold:
                row = _public(record)
                row["similarity"] = similarity
                scored.append(row)
        scored.sort(key=lambda r: r["similarity"], reverse=True)
        return scored[:match_count]

    async def text_search(
        self, user_id: str, text: str, limit: int, avatar_id: str | None = None
    ) -> list[FragmentRow]:
        words = _tokenize(text)
        if not words:
            return []
        keys = [self._keyword_key(user_id, w) for w in words]
        candidate_ids = await self._redis.sunion(*keys)
        if not candidate_ids:
            return []

        records = await self._load_many(list(candidate_ids))
        records = [r for r in records if _in_scope(r, user_id, avatar_id)]
        records.sort(key=lambda r: r.get("_created_ts", 0.0), reverse=True)
        return [_public(r) for r in records[:limit]]

    async def list(
        self,
        user_id: str,
        *,
        limit: int = 100,
        offset: int = 0,
        order_by: str = "created_at",
        descending: bool = True,
        avatar_id: str | None = None,
    ) -> list[FragmentRow]:
        if order_by not in ORDERABLE_COLUMNS:
            raise StoreError(f"Cannot order by column '{order_by}'", code="42703")

        key = self._created_key(user_id)
        if order_by == "created_at" and avatar_id is None:
            stop = offset + limit - 1 if limit > 0 else -1
            if descending:
                raw_ids = await self._redis.zrevrange(key, offset, stop)
            else:
                raw_ids = await self._redis.zrange(key, offset, stop)
            return [_public(r) for r in await self._load_many(raw_ids)]

        records = await self._user_records(user_id, avatar_id)
        if order_by == "created_at":
            records.sort(key=lambda r: r.get("_created_ts", 0.0), reverse=descending)
        else:
            records.sort(key=lambda r: r.get(order_by) or "", reverse=descending)
        page = records[offset : offset + limit] if limit > 0 else records[offset:]
        return [_public(r) for r in page]

    async def count(self, user_id: str, avatar_id: str | None = None) -> int:
        if avatar_id is None:
            return await self._redis.zcard(self._created_key(user_id))
        return len(await self._user_records(user_id, avatar_id))

    # -- admin --

    async def clear(self) -> None:
        """Remove every key under the prefix, in batches."""
        batch: list = []
        async for key in self._redis.scan_iter(match=f"{self._prefix}:*"):
            batch.append(key)
            if len(batch) >= _CLEAR_BATCH_SIZE:
                await self._redis.delete(*batch)
                batch.clear()
        if batch:
            await self._redis.delete(*batch)

    async def close(self) -> None:
        await self._redis.aclose()

    # -- internal --

    async def _load(self, fragment_id: str, user_id: str) -> dict[str, Any] | None:
        raw = await self._redis.get(self._fragment_key(fragment_id))
        if raw is None:
            return None
        record = json.loads(raw)
        if record.get("user_id") != user_id:
            return None
        return record

    async def _user_records(
        self, user_id: str, avatar_id: str | None
    ) -> list[dict[str, Any]]:
        """The user's records, newest first, narrowed to *avatar_id* if given."""
        records = await self._load_many(
            await self._redis.zrevrange(self._created_key(user_id), 0, -1)
        )
        return [r for r in records if _in_scope(r, user_id, avatar_id)]

    async def _load_many(self, raw_ids: list) -> list[dict[str, Any]]:
        if not raw_ids:
            return []
        pipe = self._redis.pipeline()
        for raw_id in raw_ids:
            pipe.get(self._fragment_key(_decode(raw_id)))
        results = await pipe.execute()
        return [json.loads(raw) for raw in results if raw is not None]

    async def _indexed_keywords(
        self, fragment_id: str, record: dict[str, Any]
    ) -> list[str]:
        kw_data = await self._redis.get(self._frag_kw_key(fragment_id))
        if kw_data is not None:
            return json.loads(kw_data)
        return sorted(_tokenize(record.get("fragment_text", "")))


def _in_scope(record: dict[str, Any], user_id: str, avatar_id: str | None) -> bool:
    if record.get("user_id") != user_id:
        return False
    return avatar_id is None or record.get("avatar_id") == avatar_id


def _public(record: dict[str, Any]) -> FragmentRow:
    return {k: v for k, v in record.items() if not k.startswith("_")}
