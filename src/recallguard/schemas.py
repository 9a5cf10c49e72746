"""Pydantic models for the MCP interface.

Output models shape tool responses; FastMCP serializes them directly.
Embeddings are never sent over the wire.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel
from pydantic import Field

from recallguard.memory.schemas import MemoryFragment

# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class MemoryRecord(BaseModel):
    """A memory fragment as returned by the tools."""

    id: str | None = Field(
        default=None,
        description="Datastore identifier of the fragment.",
    )
    fragment_text: str = Field(
        description="The remembered fact.",
    )
    avatar_id: str | None = Field(
        default=None,
        description="Avatar the memory is scoped to, if any.",
    )
    emotional_tone: str | None = Field(
        default=None,
        description="Tone of the message the fact was learned from.",
    )
    created_at: str | None = Field(
        default=None,
        description="ISO-8601 creation time.",
    )
    updated_at: str | None = Field(
        default=None,
        description="ISO-8601 time of the last change.",
    )
    similarity: float | None = Field(
        default=None,
        description="Similarity to the query, for search results only.",
    )

    @classmethod
    def from_fragment(cls, fragment: MemoryFragment) -> MemoryRecord:
        context = fragment.conversation_context
        return cls(
            id=fragment.id,
            fragment_text=fragment.fragment_text,
            avatar_id=fragment.avatar_id,
            emotional_tone=context.emotional_tone if context else None,
            created_at=fragment.created_at.isoformat() if fragment.created_at else None,
            updated_at=fragment.updated_at.isoformat() if fragment.updated_at else None,
            similarity=fragment.similarity,
        )


class ToolResult(BaseModel):
    """Fields every tool response carries."""

    status: str = Field(
        default="ok",
        description="ok, not_found or error.",
    )
    error_code: str | None = Field(
        default=None,
        description="Error kind when status is error.",
    )
    message: str | None = Field(
        default=None,
        description="Human-readable explanation when status is error.",
    )


# ---------------------------------------------------------------------------
# Output models
# ---------------------------------------------------------------------------


class RememberResult(ToolResult):
    """Response from remember."""

    memories: list[MemoryRecord] = Field(
        default_factory=list,
        description="Fragments extracted and stored from the message.",
    )


class RecallResult(ToolResult):
    """Response from recall."""

    memories: list[MemoryRecord] = Field(
        default_factory=list,
        description="Relevant fragments, most similar first.",
    )
    chat_context: str = Field(
        default="",
        description="Prompt block listing the relevant memories.",
    )


class RecallContextResult(ToolResult):
    """Response from recall_context."""

    memories: list[MemoryRecord] = Field(default_factory=list)
    context_prompt: str = Field(
        default="",
        description="Personalised prompt block built from the memories.",
    )
    personality_enhancements: list[str] = Field(
        default_factory=list,
        description="Signals detected in the memories.",
    )


class ListMemoriesResult(ToolResult):
    """Response from list_memories."""

    memories: list[MemoryRecord] = Field(default_factory=list)
    returned: int = 0


class GetMemoryResult(ToolResult):
    """Response from get_memory."""

    memory: MemoryRecord | None = None


class MutationResult(ToolResult):
    """Response from update_memory, delete_memory and delete_all_memories."""

    affected: int = Field(
        default=0,
        description="Number of fragments changed or removed.",
    )


class MemoryStatsResult(ToolResult):
    """Response from memory_stats."""

    total_fragments: int = 0
    oldest_memory: str | None = None
    newest_memory: str | None = None


class SystemHealthResult(ToolResult):
    """Response from system_health."""

    healthy: bool = True
    report: dict[str, Any] = Field(default_factory=dict)
