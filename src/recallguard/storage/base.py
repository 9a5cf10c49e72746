"""Datastore boundary for persisted memory fragments.

Rows are plain dicts with the keys ``id``, ``user_id``, ``avatar_id``,
``fragment_text``, ``embedding``, ``conversation_context``, ``created_at``
and ``updated_at`` (ISO-8601 strings). Similarity search rows also carry
``similarity``.

Every method is scoped by user id: a row that belongs to another user is
treated exactly like a row that does not exist. Methods that take an
``avatar_id`` narrow further to that avatar when it is given; ``None``
means every avatar.
"""

from __future__ import annotations

from typing import Any
from typing import Protocol
from typing import runtime_checkable

FragmentRow = dict[str, Any]

ORDERABLE_COLUMNS = frozenset({"created_at", "updated_at"})


@runtime_checkable
class FragmentDatastore(Protocol):
    """Async persistence backend for memory fragments."""

    async def insert(self, rows: list[FragmentRow]) -> list[str]:
        """Persist *rows* and return the assigned ids, in order."""
        ...

    async def update(self, fragment_id: str, user_id: str, values: FragmentRow) -> bool:
        """Apply *values* to one row; ``False`` when nothing matched."""
        ...

    async def delete(self, fragment_id: str, user_id: str) -> bool: ...

    async def delete_all(self, user_id: str, avatar_id: str | None = None) -> int: ...

    async def get(self, fragment_id: str, user_id: str) -> FragmentRow:
        """Return one row or raise ``StoreError`` with code ``NO_ROWS``."""
        ...

    async def match_fragments(
        self,
        query_embedding: list[float],
        match_threshold: float,
        match_count: int,
        target_user_id: str,
        target_avatar_id: str | None = None,
    ) -> list[FragmentRow]:
        """Rows whose cosine similarity exceeds *match_threshold*, best first."""
        ...

    async def text_search(
        self, user_id: str, text: str, limit: int, avatar_id: str | None = None
    ) -> list[FragmentRow]: ...

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
        """One page of rows; ``limit=0`` returns every remaining row."""
        ...

    async def count(self, user_id: str, avatar_id: str | None = None) -> int: ...
