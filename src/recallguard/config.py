"""Application configuration dataclasses.

Frozen dataclasses with sensible defaults for each subsystem. Values can
be overridden at construction time; ``Settings.from_env`` is the only
place that reads the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from dataclasses import field

from dotenv import load_dotenv

from recallguard.errors import MemoryErrorKind


@dataclass(frozen=True)
class LLMConfig:
    """Completion provider settings used by the memory extractor."""

    provider: str = "openai"
    model: str = "gpt-4o-mini"
    api_key: str | None = None
    base_url: str = "https://api.openai.com/v1"
    temperature: float = 0.3
    max_tokens: int = 800
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class EmbeddingConfig:
    """Embedding provider settings used by the memory store."""

    provider: str = "openai"
    model: str = "text-embedding-3-small"
    api_key: str | None = None
    base_url: str = "https://api.openai.com/v1"
    dimension: int = 1536
    batch_size: int = 100
    batch_delay_seconds: float = 0.05
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff profile for one dependency."""

    max_attempts: int
    base_delay: float
    max_delay: float
    backoff_multiplier: float = 2.0
    retryable_kinds: frozenset[MemoryErrorKind] = frozenset()
    # Upper bound of the uniform random jitter added to every delay
    jitter: float = 1.0

    def delay_for(self, attempt: int) -> float:
        """Backoff delay before retrying after *attempt* (1-based), without jitter."""
        raw = self.base_delay * self.backoff_multiplier ** (attempt - 1)
        return min(raw, self.max_delay)


DEFAULT_RETRY_POLICIES: dict[str, RetryPolicy] = {
    "openai": RetryPolicy(
        max_attempts=3,
        base_delay=1.0,
        max_delay=10.0,
        retryable_kinds=frozenset(
            {
                MemoryErrorKind.PROVIDER_RATE_LIMIT,
                MemoryErrorKind.PROVIDER_TIMEOUT,
                MemoryErrorKind.PROVIDER_API_ERROR,
            }
        ),
    ),
    "database": RetryPolicy(
        max_attempts=2,
        base_delay=0.5,
        max_delay=2.0,
        retryable_kinds=frozenset(
            {
                MemoryErrorKind.STORE_CONNECTION,
                MemoryErrorKind.STORE_TIMEOUT,
            }
        ),
    ),
    "vector_search": RetryPolicy(
        max_attempts=2,
        base_delay=1.0,
        max_delay=3.0,
        retryable_kinds=frozenset(
            {
                MemoryErrorKind.SEARCH_FAILED,
                MemoryErrorKind.STORE_CONNECTION,
            }
        ),
    ),
}


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds for the per-dependency circuit breakers."""

    failure_threshold: int = 5
    recovery_seconds: float = 60.0


def _default_cache_ttls() -> dict[str, float]:
    return {
        "user_memories": 5 * 60.0,
        "memory_stats": 15 * 60.0,
        "relevant_memories": 2 * 60.0,
        "embeddings": 60 * 60.0,
        "memory_fragment": 10 * 60.0,
    }


@dataclass(frozen=True)
class CacheConfig:
    """TTL table and sweep cadence for the in-process cache."""

    default_ttl_seconds: float = 10 * 60.0
    sweep_interval_seconds: float = 5 * 60.0
    ttl_by_operation: dict[str, float] = field(default_factory=_default_cache_ttls)

    def ttl_for(self, operation_type: str | None) -> float:
        if operation_type is None:
            return self.default_ttl_seconds
        return self.ttl_by_operation.get(operation_type, self.default_ttl_seconds)


@dataclass(frozen=True)
class ExtractionConfig:
    """Batching parameters for memory extraction."""

    batch_size: int = 5
    batch_delay_seconds: float = 0.1
    message_context_chars: int = 200


@dataclass(frozen=True)
class RetrievalConfig:
    """Defaults applied by the memory retriever and orchestrator."""

    default_limit: int = 10
    similarity_threshold: float = 0.7
    list_limit: int = 100
    cache_query_chars: int = 100
    chat_max_memories: int = 5


@dataclass(frozen=True)
class MonitoringConfig:
    """Limits for the performance monitor and health checks."""

    max_metrics: int = 10_000
    slow_operation_ms: float = 5_000.0
    daily_error_threshold: int = 50


@dataclass(frozen=True)
class StoreConfig:
    """Redis datastore settings."""

    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "recallguard"


@dataclass(frozen=True)
class Settings:
    """Bundle of every subsystem configuration."""

    llm: LLMConfig = field(default_factory=LLMConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    retry_policies: dict[str, RetryPolicy] = field(
        default_factory=lambda: dict(DEFAULT_RETRY_POLICIES)
    )

    @classmethod
    def from_env(cls, *, dotenv_path: str | None = None) -> Settings:
        """Build settings from environment variables (after loading ``.env``).

        Existing environment variables stay authoritative over the file.
        """
        load_dotenv(dotenv_path=dotenv_path, override=False)
        api_key = os.environ.get("OPENAI_API_KEY") or None
        base_url = os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1")
        return cls(
            llm=LLMConfig(
                provider=os.environ.get("RECALLGUARD_LLM_PROVIDER", "openai"),
                model=os.environ.get("RECALLGUARD_LLM_MODEL", "gpt-4o-mini"),
                api_key=api_key,
                base_url=base_url,
            ),
            embedding=EmbeddingConfig(
                provider=os.environ.get("RECALLGUARD_EMBEDDING_PROVIDER", "openai"),
                model=os.environ.get(
                    "RECALLGUARD_EMBEDDING_MODEL", "text-embedding-3-small"
                ),
                api_key=api_key,
                base_url=base_url,
            ),
            store=StoreConfig(
                redis_url=os.environ.get(
                    "RECALLGUARD_REDIS_URL", "redis://localhost:6379"
                ),
            ),
        )
