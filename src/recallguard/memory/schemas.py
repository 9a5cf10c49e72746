"""Memory domain data models."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel
from pydantic import Field


class ConversationContext(BaseModel):
    """Where and how a fragment was learned."""

    timestamp: str = Field(
        description="ISO-8601 time at which the fragment was extracted.",
    )
    message_context: str = Field(
        default="",
        description="Caller-supplied context, or the head of the source message.",
    )
    emotional_tone: str = Field(
        default="neutral",
        description="positive, negative, anxious or neutral.",
    )


class MemoryFragment(BaseModel):
    """One durable personal fact about a user."""

    id: str | None = Field(
        default=None,
        description="Datastore-assigned identifier; None until persisted.",
    )
    user_id: str = Field(
        description="Owning user. Every read and write is scoped to it.",
    )
    avatar_id: str | None = Field(
        default=None,
        description="Companion avatar the fact was learned by; None when unscoped.",
    )
    fragment_text: str = Field(
        description="One short standalone sentence.",
    )
    embedding: list[float] | None = Field(
        default=None,
        description="Semantic vector, generated at storage time.",
    )
    conversation_context: ConversationContext | None = Field(
        default=None,
        description="Extraction context; omitted when not requested.",
    )
    created_at: datetime | None = Field(
        default=None,
        description="Set by the datastore on insert.",
    )
    updated_at: datetime | None = Field(
        default=None,
        description="Bumped by the datastore on every mutation.",
    )
    similarity: float | None = Field(
        default=None,
        description="Cosine similarity to the query; retrieval only, never stored.",
    )

    @classmethod
    def from_row(
        cls, row: dict[str, Any], *, include_context: bool = True
    ) -> MemoryFragment:
        """Build a fragment from a datastore row."""
        context = row.get("conversation_context") if include_context else None
        return cls(
            id=row.get("id"),
            user_id=row["user_id"],
            avatar_id=row.get("avatar_id"),
            fragment_text=row["fragment_text"],
            embedding=row.get("embedding"),
            conversation_context=context or None,
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
            similarity=row.get("similarity"),
        )

    def to_row(self) -> dict[str, Any]:
        """Insertable datastore row (no id or timestamps)."""
        return {
            "user_id": self.user_id,
            "avatar_id": self.avatar_id,
            "fragment_text": self.fragment_text,
            "embedding": self.embedding,
            "conversation_context": (
                self.conversation_context.model_dump()
                if self.conversation_context is not None
                else None
            ),
        }


class MemoryStats(BaseModel):
    """Summary of one user's stored fragments."""

    total_fragments: int = 0
    oldest_memory: datetime | None = None
    newest_memory: datetime | None = None


class EnhancedMemoryContext(BaseModel):
    """Retrieved memories plus the prompt block built from them."""

    memories: list[MemoryFragment] = Field(default_factory=list)
    context_prompt: str = ""
    personality_enhancements: list[str] = Field(default_factory=list)
