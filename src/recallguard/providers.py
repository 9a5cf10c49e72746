"""Completion and embedding provider adapters and factory helpers."""

from __future__ import annotations

import asyncio
import hashlib
import json
import math
import struct
from typing import Any
from typing import Protocol
from typing import runtime_checkable
from urllib.error import HTTPError
from urllib.error import URLError
from urllib.request import Request
from urllib.request import urlopen

from recallguard.config import EmbeddingConfig
from recallguard.config import LLMConfig
from recallguard.errors import ProviderError

# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class CompletionProvider(Protocol):
    """Chat-completion backend used by the memory extractor."""

    async def complete(
        self,
        system: str,
        user: str,
        *,
        temperature: float = 0.3,
        max_tokens: int = 800,
        timeout_seconds: float = 30.0,
    ) -> str: ...


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Embedding backend; returns one vector per input, in input order."""

    async def embed(self, texts: list[str]) -> list[list[float]]: ...


# ---------------------------------------------------------------------------
# HTTP transport
# ---------------------------------------------------------------------------


def _post_json(
    url: str,
    payload: dict[str, Any],
    *,
    api_key: str,
    timeout_seconds: float,
) -> dict[str, Any]:
    request = Request(
        url=url,
        data=json.dumps(payload).encode("utf-8"),
        headers={
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        },
        method="POST",
    )
    try:
        with urlopen(request, timeout=timeout_seconds) as response:
            raw = response.read().decode("utf-8")
    except HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        error_type = None
        try:
            error_type = json.loads(detail)["error"]["type"]
        except (KeyError, TypeError, ValueError):
            pass
        raise ProviderError(
            f"provider HTTP {exc.code}: {detail[:200]}",
            status=exc.code,
            error_type=error_type,
        ) from exc
    except URLError as exc:
        if isinstance(exc.reason, TimeoutError):
            raise TimeoutError(f"provider request timed out: {exc.reason}") from exc
        raise ProviderError(f"provider network error: {exc.reason}") from exc
    except TimeoutError:
        raise
    except OSError as exc:
        raise ProviderError(f"provider IO error: {exc}") from exc

    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise ProviderError("provider returned invalid JSON") from exc
    if not isinstance(data, dict):
        raise ProviderError("provider response must be a JSON object")
    return data


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------


class NoopCompletionProvider(CompletionProvider):
    """Deterministic provider that never extracts anything."""

    async def complete(
        self,
        system: str,
        user: str,
        *,
        temperature: float = 0.3,
        max_tokens: int = 800,
        timeout_seconds: float = 30.0,
    ) -> str:
        del system, user, temperature, max_tokens, timeout_seconds
        return "[]"


class OpenAICompatibleCompletionProvider(CompletionProvider):
    """OpenAI-compatible chat-completions provider."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")

    async def complete(
        self,
        system: str,
        user: str,
        *,
        temperature: float = 0.3,
        max_tokens: int = 800,
        timeout_seconds: float = 30.0,
    ) -> str:
        return await asyncio.to_thread(
            self._complete_sync,
            system,
            user,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout_seconds=timeout_seconds,
        )

    def _complete_sync(
        self,
        system: str,
        user: str,
        *,
        temperature: float,
        max_tokens: int,
        timeout_seconds: float,
    ) -> str:
        payload = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        data = _post_json(
            f"{self._base_url}/chat/completions",
            payload,
            api_key=self._api_key,
            timeout_seconds=timeout_seconds,
        )
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(
                "provider response missing choices[0].message.content"
            ) from exc

        if isinstance(content, str):
            return content
        raise ProviderError("provider response content must be a string")


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------


class NoopEmbeddingProvider(EmbeddingProvider):
    """Deterministic unit vectors derived from a SHA-256 of each text.

    Identical texts embed identically; different texts are close to
    orthogonal. Useful for local runs without provider credentials.
    """

    def __init__(self, dimension: int = 1536) -> None:
        self._dimension = dimension

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return [self._vector(text) for text in texts]

    def _vector(self, text: str) -> list[float]:
        values: list[float] = []
        counter = 0
        while len(values) < self._dimension:
            digest = hashlib.sha256(f"{counter}:{text}".encode()).digest()
            for (word,) in struct.iter_unpack(">I", digest):
                values.append(word / 0xFFFFFFFF - 0.5)
            counter += 1
        values = values[: self._dimension]
        norm = math.sqrt(sum(v * v for v in values)) or 1.0
        return [v / norm for v in values]


class OpenAICompatibleEmbeddingProvider(EmbeddingProvider):
    """OpenAI-compatible ``/embeddings`` provider."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 30.0,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return await asyncio.to_thread(self._embed_sync, texts)

    def _embed_sync(self, texts: list[str]) -> list[list[float]]:
        data = _post_json(
            f"{self._base_url}/embeddings",
            {"model": self._model, "input": texts},
            api_key=self._api_key,
            timeout_seconds=self._timeout_seconds,
        )
        try:
            items = sorted(data["data"], key=lambda item: item.get("index", 0))
            return [list(item["embedding"]) for item in items]
        except (KeyError, TypeError) as exc:
            raise ProviderError("provider response missing data[].embedding") from exc


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def build_completion_provider(config: LLMConfig) -> CompletionProvider:
    """Create a concrete completion provider from ``LLMConfig``."""

    provider = config.provider.strip().lower()
    if provider == "openai":
        if not config.api_key:
            raise ValueError("llm_config.api_key is required when provider='openai'")
        return OpenAICompatibleCompletionProvider(
            model=config.model,
            api_key=config.api_key,
            base_url=config.base_url,
        )
    if provider == "noop":
        return NoopCompletionProvider()
    raise ValueError(
        f"Unsupported llm_config.provider '{config.provider}'. "
        "Supported providers: openai, noop."
    )


def build_embedding_provider(config: EmbeddingConfig) -> EmbeddingProvider:
    """Create a concrete embedding provider from ``EmbeddingConfig``."""

    provider = config.provider.strip().lower()
    if provider == "openai":
        if not config.api_key:
            raise ValueError(
                "embedding_config.api_key is required when provider='openai'"
            )
        return OpenAICompatibleEmbeddingProvider(
            model=config.model,
            api_key=config.api_key,
            base_url=config.base_url,
            timeout_seconds=config.timeout_seconds,
        )
    if provider == "noop":
        return NoopEmbeddingProvider(config.dimension)
    raise ValueError(
        f"Unsupported embedding_config.provider '{config.provider}'. "
        "Supported providers: openai, noop."
    )
