"""Memory domain: extraction, storage, retrieval and orchestration."""

from __future__ import annotations

from recallguard.memory.extraction import MemoryExtractor
from recallguard.memory.retrieval import MemoryRetriever
from recallguard.memory.schemas import ConversationContext
from recallguard.memory.schemas import EnhancedMemoryContext
from recallguard.memory.schemas import MemoryFragment
from recallguard.memory.schemas import MemoryStats
from recallguard.memory.service import MemoryService
from recallguard.memory.store import MemoryStore

__all__ = [
    "ConversationContext",
    "EnhancedMemoryContext",
    "MemoryExtractor",
    "MemoryFragment",
    "MemoryRetriever",
    "MemoryService",
    "MemoryStats",
    "MemoryStore",
]
