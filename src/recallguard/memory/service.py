"""Memory orchestrator: the entry points the chat layer calls.

Every public method here resolves; failures degrade to an empty result.
"""

from __future__ import annotations

import logging
from typing import Any

from recallguard.config import RetrievalConfig
from recallguard.config import Settings
from recallguard.memory.extraction import MemoryExtractor
from recallguard.memory.prompt_builder import analyze_personality_signals
from recallguard.memory.prompt_builder import build_enhanced_memory_prompt
from recallguard.memory.prompt_builder import format_chat_memories
from recallguard.memory.retrieval import MemoryRetriever
from recallguard.memory.schemas import EnhancedMemoryContext
from recallguard.memory.schemas import MemoryFragment
from recallguard.memory.store import MemoryStore
from recallguard.providers import CompletionProvider
from recallguard.providers import EmbeddingProvider
from recallguard.resilience.context import ResilienceContext
from recallguard.storage.base import FragmentDatastore

logger = logging.getLogger(__name__)


class MemoryService:
    """Wires extractor, store and retriever over one resilience context."""

    def __init__(
        self,
        extractor: MemoryExtractor,
        store: MemoryStore,
        retriever: MemoryRetriever,
        resilience: ResilienceContext,
        config: RetrievalConfig | None = None,
    ) -> None:
        self.extractor = extractor
        self.store = store
        self.retriever = retriever
        self.resilience = resilience
        self._config = config or RetrievalConfig()

    @classmethod
    def build(
        cls,
        *,
        datastore: FragmentDatastore,
        completion: CompletionProvider,
        embeddings: EmbeddingProvider,
        settings: Settings | None = None,
        resilience: ResilienceContext | None = None,
    ) -> MemoryService:
        """Assemble a service from its dependencies and settings."""
        settings = settings or Settings()
        resilience = resilience or ResilienceContext.from_settings(settings)
        store = MemoryStore(datastore, embeddings, resilience, settings.embedding)
        return cls(
            extractor=MemoryExtractor(
                completion, resilience, settings.llm, settings.extraction
            ),
            store=store,
            retriever=MemoryRetriever(
                datastore, store, resilience, settings.retrieval
            ),
            resilience=resilience,
            config=settings.retrieval,
        )

    async def process_and_store_memories(
        self,
        message: str,
        user_id: str,
        context: str | dict[str, Any] | None = None,
        extraction_threshold: float | None = None,
        avatar_id: str | None = None,
    ) -> list[MemoryFragment]:
        """Extract fragments from *message* and persist them.

        Fragments are tagged with *avatar_id* when given. Returns the stored
        fragments with their assigned ids.
        """

        async def _process() -> list[MemoryFragment]:
            fragments = await self.extractor.extract_memory_fragments(
                message, user_id, context, extraction_threshold
            )
            if not fragments:
                return []
            if avatar_id is not None:
                fragments = [
                    f.model_copy(update={"avatar_id": avatar_id}) for f in fragments
                ]
            ids = await self.store.batch_store_memory_fragments(fragments)
            return [
                fragment.model_copy(update={"id": fragment_id})
                for fragment, fragment_id in zip(fragments, ids)
            ]

        return await self.resilience.with_graceful_degradation(
            _process,
            [],
            "process_and_store_memories",
            {
                "user_id": user_id,
                "message_length": len(message),
                "avatar_id": avatar_id,
            },
        )

    async def get_memories_for_chat(
        self,
        query: str,
        user_id: str,
        max_memories: int | None = None,
        avatar_id: str | None = None,
    ) -> str:
        """Relevant memories formatted as a chat prompt block, or ``""``."""
        limit = self._config.chat_max_memories if max_memories is None else max_memories

        async def _format() -> str:
            memories = await self.retriever.retrieve_relevant_memories(
                query,
                user_id,
                limit=limit,
                include_context=False,
                avatar_id=avatar_id,
            )
            return format_chat_memories(memories)

        return await self.resilience.with_graceful_degradation(
            _format,
            "",
            "get_memories_for_chat",
            {
                "user_id": user_id,
                "query_length": len(query),
                "max_memories": limit,
                "avatar_id": avatar_id,
            },
        )

    async def get_enhanced_memory_context(
        self,
        query: str,
        user_id: str,
        profile_data: dict[str, Any] | None = None,
        max_memories: int | None = None,
        avatar_id: str | None = None,
    ) -> EnhancedMemoryContext:
        """Relevant memories plus a personalised prompt block built from them."""
        limit = self._config.chat_max_memories if max_memories is None else max_memories

        async def _enhance() -> EnhancedMemoryContext:
            memories = await self.retriever.retrieve_relevant_memories(
                query,
                user_id,
                limit=limit,
                similarity_threshold=self._config.similarity_threshold,
                include_context=True,
                avatar_id=avatar_id,
            )
            if not memories:
                return EnhancedMemoryContext()
            signals = analyze_personality_signals(memories, profile_data)
            return EnhancedMemoryContext(
                memories=memories,
                context_prompt=build_enhanced_memory_prompt(memories, signals),
                personality_enhancements=signals,
            )

        return await self.resilience.with_graceful_degradation(
            _enhance,
            EnhancedMemoryContext,
            "get_enhanced_memory_context",
            {
                "user_id": user_id,
                "query_length": len(query),
                "max_memories": limit,
                "avatar_id": avatar_id,
            },
        )

    async def get_latest_memories(
        self,
        user_id: str,
        limit: int | None = None,
        avatar_id: str | None = None,
    ) -> list[MemoryFragment]:
        """Newest fragments first."""
        return await self.retriever.get_user_memories(
            user_id,
            limit=self._config.default_limit if limit is None else limit,
            order_by="created_at",
            order_direction="desc",
            avatar_id=avatar_id,
        )

    def system_health(self) -> dict[str, Any]:
        report = self.resilience.system_health_report()
        report["performance"] = self.resilience.monitor.report()
        return report
