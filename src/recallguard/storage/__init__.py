"""Fragment persistence: datastore protocol and Redis implementation."""

from __future__ import annotations

from recallguard.storage.base import FragmentDatastore
from recallguard.storage.base import FragmentRow
from recallguard.storage.redis_store import RedisFragmentDatastore
from recallguard.storage.redis_store import cosine_similarity

__all__ = [
    "FragmentDatastore",
    "FragmentRow",
    "RedisFragmentDatastore",
    "cosine_similarity",
]
