"""RecallGuard: FastMCP v2 server exposing the memory subsystem as tools.

Call ``configure(...)`` before using the tools. ``main()`` configures from
the environment and serves over stdio.
"""

from __future__ import annotations

import asyncio
import logging
import os
from time import perf_counter
from typing import Any

from fastmcp import FastMCP

from recallguard.config import Settings
from recallguard.errors import MemoryOperationError
from recallguard.errors import user_friendly_message
from recallguard.memory import MemoryService
from recallguard.memory.prompt_builder import format_chat_memories
from recallguard.providers import CompletionProvider
from recallguard.providers import EmbeddingProvider
from recallguard.providers import build_completion_provider
from recallguard.providers import build_embedding_provider
from recallguard.resilience import ResilienceContext
from recallguard.schemas import GetMemoryResult
from recallguard.schemas import ListMemoriesResult
from recallguard.schemas import MemoryRecord
from recallguard.schemas import MemoryStatsResult
from recallguard.schemas import MutationResult
from recallguard.schemas import RecallContextResult
from recallguard.schemas import RecallResult
from recallguard.schemas import RememberResult
from recallguard.schemas import SystemHealthResult
from recallguard.storage import FragmentDatastore
from recallguard.storage import RedisFragmentDatastore

logger = logging.getLogger(__name__)

mcp = FastMCP("RecallGuard")

# ---------------------------------------------------------------------------
# Service instance (set via configure())
# ---------------------------------------------------------------------------

_service: MemoryService | None = None
_datastore: FragmentDatastore | None = None


async def configure(
    redis_url: str | None = None,
    *,
    settings: Settings | None = None,
    datastore: FragmentDatastore | None = None,
    completion: CompletionProvider | None = None,
    embeddings: EmbeddingProvider | None = None,
    resilience: ResilienceContext | None = None,
    start_background: bool = False,
) -> MemoryService:
    """Initialize the memory service backing the tools.

    Any dependency left as ``None`` is built from *settings*. The Redis
    datastore is used unless one is injected.
    """
    global _service, _datastore
    await shutdown()

    settings = settings or Settings()
    if datastore is None:
        datastore = RedisFragmentDatastore.from_url(
            redis_url or settings.store.redis_url,
            prefix=settings.store.key_prefix,
        )
    resilience = resilience or ResilienceContext.from_settings(settings)

    _datastore = datastore
    _service = MemoryService.build(
        datastore=datastore,
        completion=completion or build_completion_provider(settings.llm),
        embeddings=embeddings or build_embedding_provider(settings.embedding),
        settings=settings,
        resilience=resilience,
    )
    if start_background:
        resilience.start()
    return _service


async def shutdown() -> None:
    """Stop background tasks and close the datastore client."""
    global _service, _datastore
    if _service is not None:
        await _service.resilience.stop()
        _service = None
    if _datastore is not None:
        close = getattr(_datastore, "close", None)
        if close is not None:
            try:
                await close()
            except RuntimeError:
                # Tests may reconfigure across event loops.
                pass
        _datastore = None


def _get_service() -> MemoryService:
    """Return the configured service or raise."""
    if _service is None:
        raise RuntimeError("Memory service not configured. Call configure() first.")
    return _service


def _record(service: MemoryService, operation: str, start: float, ok: bool) -> None:
    service.resilience.monitor.record(
        operation, (perf_counter() - start) * 1000, success=ok
    )


def _error_fields(exc: MemoryOperationError) -> dict[str, Any]:
    return {
        "status": "error",
        "error_code": exc.kind.value,
        "message": user_friendly_message(exc),
    }


# ---------------------------------------------------------------------------
# Tools: conversation
# ---------------------------------------------------------------------------


@mcp.tool
async def remember(
    message: str,
    user_id: str,
    context: dict | None = None,
    extraction_threshold: float | None = None,
    avatar_id: str | None = None,
) -> RememberResult:
    """Extract durable personal facts from a message and store them.

    Args:
        message: The user's conversational message.
        user_id: Owner of the memories.
        context: Optional conversation context (rendered as key: value lines).
        extraction_threshold: Higher values extract more conservatively.
        avatar_id: Companion avatar the memories belong to.
    """
    service = _get_service()
    start = perf_counter()
    ok = False
    try:
        stored = await service.process_and_store_memories(
            message, user_id, context, extraction_threshold, avatar_id
        )
        ok = True
        return RememberResult(
            memories=[MemoryRecord.from_fragment(f) for f in stored],
        )
    finally:
        _record(service, "mcp.remember", start, ok)


@mcp.tool
async def recall(
    query: str,
    user_id: str,
    limit: int = 5,
    similarity_threshold: float | None = None,
    avatar_id: str | None = None,
) -> RecallResult:
    """Retrieve the memories most relevant to a query.

    Args:
        query: Natural language query.
        user_id: Whose memories to search.
        limit: Max memories returned.
        similarity_threshold: Minimum cosine similarity (default 0.7).
        avatar_id: Only search this avatar's memories.
    """
    service = _get_service()
    start = perf_counter()
    ok = False
    try:
        memories = await service.resilience.with_graceful_degradation(
            lambda: service.retriever.retrieve_relevant_memories(
                query,
                user_id,
                limit=limit,
                similarity_threshold=similarity_threshold,
                include_context=True,
                avatar_id=avatar_id,
            ),
            [],
            "mcp_recall",
            {"user_id": user_id, "avatar_id": avatar_id},
        )
        chat_context = format_chat_memories(memories)
        ok = True
        return RecallResult(
            memories=[MemoryRecord.from_fragment(m) for m in memories],
            chat_context=chat_context,
        )
    finally:
        _record(service, "mcp.recall", start, ok)


@mcp.tool
async def recall_context(
    query: str,
    user_id: str,
    profile_data: dict | None = None,
    max_memories: int = 5,
    avatar_id: str | None = None,
) -> RecallContextResult:
    """Build a personalised prompt block from the user's relevant memories.

    Args:
        query: The current user message.
        user_id: Whose memories to use.
        profile_data: Companion profile; ``hobbies`` enables shared interests.
        max_memories: Max memories to include.
        avatar_id: Only use this avatar's memories.
    """
    service = _get_service()
    start = perf_counter()
    ok = False
    try:
        enhanced = await service.get_enhanced_memory_context(
            query, user_id, profile_data, max_memories, avatar_id
        )
        ok = True
        return RecallContextResult(
            memories=[MemoryRecord.from_fragment(m) for m in enhanced.memories],
            context_prompt=enhanced.context_prompt,
            personality_enhancements=enhanced.personality_enhancements,
        )
    finally:
        _record(service, "mcp.recall_context", start, ok)


# ---------------------------------------------------------------------------
# Tools: management
# ---------------------------------------------------------------------------


@mcp.tool
async def list_memories(
    user_id: str,
    limit: int = 100,
    offset: int = 0,
    order_by: str = "created_at",
    order_direction: str = "desc",
    avatar_id: str | None = None,
) -> ListMemoriesResult:
    """List a user's memories, one page at a time.

    Args:
        user_id: Whose memories to list.
        limit: Page size (0 returns everything).
        offset: Number of memories to skip.
        order_by: created_at or updated_at.
        order_direction: asc or desc.
        avatar_id: Only list this avatar's memories.
    """
    service = _get_service()
    start = perf_counter()
    ok = False
    try:
        memories = await service.retriever.get_user_memories(
            user_id,
            limit=limit,
            offset=offset,
            order_by=order_by,
            order_direction=order_direction,
            avatar_id=avatar_id,
        )
        ok = True
        return ListMemoriesResult(
            memories=[MemoryRecord.from_fragment(m) for m in memories],
            returned=len(memories),
        )
    except MemoryOperationError as exc:
        return ListMemoriesResult(**_error_fields(exc))
    finally:
        _record(service, "mcp.list_memories", start, ok)


@mcp.tool
async def get_memory(fragment_id: str, user_id: str) -> GetMemoryResult:
    """Fetch one memory by id.

    Args:
        fragment_id: Memory identifier.
        user_id: Owner of the memory.
    """
    service = _get_service()
    start = perf_counter()
    ok = False
    try:
        fragment = await service.retriever.get_memory_fragment(fragment_id, user_id)
        ok = True
        if fragment is None:
            return GetMemoryResult(status="not_found")
        return GetMemoryResult(memory=MemoryRecord.from_fragment(fragment))
    except MemoryOperationError as exc:
        return GetMemoryResult(**_error_fields(exc))
    finally:
        _record(service, "mcp.get_memory", start, ok)


@mcp.tool
async def update_memory(
    fragment_id: str,
    user_id: str,
    fragment_text: str | None = None,
    context: dict | None = None,
) -> MutationResult:
    """Change the text and/or conversation context of one memory.

    Args:
        fragment_id: Memory identifier.
        user_id: Owner of the memory.
        fragment_text: New text; the memory is re-embedded.
        context: New conversation context.
    """
    service = _get_service()
    start = perf_counter()
    ok = False
    try:
        updated = await service.store.update_memory_fragment(
            fragment_id, user_id, fragment_text, context
        )
        ok = True
        if not updated:
            return MutationResult(status="not_found")
        return MutationResult(affected=1)
    except MemoryOperationError as exc:
        return MutationResult(**_error_fields(exc))
    finally:
        _record(service, "mcp.update_memory", start, ok)


@mcp.tool
async def delete_memory(fragment_id: str, user_id: str) -> MutationResult:
    """Delete one memory.

    Args:
        fragment_id: Memory identifier.
        user_id: Owner of the memory.
    """
    service = _get_service()
    start = perf_counter()
    ok = False
    try:
        deleted = await service.store.delete_memory_fragment(fragment_id, user_id)
        ok = True
        if not deleted:
            return MutationResult(status="not_found")
        return MutationResult(affected=1)
    except MemoryOperationError as exc:
        return MutationResult(**_error_fields(exc))
    finally:
        _record(service, "mcp.delete_memory", start, ok)


@mcp.tool
async def delete_all_memories(
    user_id: str, avatar_id: str | None = None
) -> MutationResult:
    """Delete every memory of a user, or only those of one avatar.

    Args:
        user_id: Whose memories to delete.
        avatar_id: Restrict the deletion to this avatar's memories.
    """
    service = _get_service()
    start = perf_counter()
    ok = False
    try:
        deleted = await service.store.delete_all_user_memories(user_id, avatar_id)
        ok = True
        return MutationResult(affected=deleted)
    except MemoryOperationError as exc:
        return MutationResult(**_error_fields(exc))
    finally:
        _record(service, "mcp.delete_all_memories", start, ok)


@mcp.tool
async def memory_stats(
    user_id: str, avatar_id: str | None = None
) -> MemoryStatsResult:
    """Count a user's memories and report the oldest and newest.

    Args:
        user_id: Whose memories to summarise.
        avatar_id: Only count this avatar's memories.
    """
    service = _get_service()
    start = perf_counter()
    ok = False
    try:
        stats = await service.retriever.get_memory_stats(user_id, avatar_id)
        ok = True
        return MemoryStatsResult(
            total_fragments=stats.total_fragments,
            oldest_memory=(
                stats.oldest_memory.isoformat() if stats.oldest_memory else None
            ),
            newest_memory=(
                stats.newest_memory.isoformat() if stats.newest_memory else None
            ),
        )
    except MemoryOperationError as exc:
        return MemoryStatsResult(**_error_fields(exc))
    finally:
        _record(service, "mcp.memory_stats", start, ok)


@mcp.tool
async def system_health() -> SystemHealthResult:
    """Report breaker states, daily error counts and recommendations."""
    service = _get_service()
    report = service.system_health()
    return SystemHealthResult(healthy=report["healthy"], report=report)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def _serve(settings: Settings) -> None:
    await configure(settings=settings, start_background=True)
    try:
        await mcp.run_async()
    finally:
        await shutdown()


def main() -> None:
    settings = Settings.from_env()
    logging.basicConfig(
        level=os.environ.get("RECALLGUARD_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info(
        "Starting RecallGuard (llm=%s, embeddings=%s, redis=%s)",
        settings.llm.provider,
        settings.embedding.provider,
        settings.store.redis_url,
    )
    asyncio.run(_serve(settings))


if __name__ == "__main__":
    main()
