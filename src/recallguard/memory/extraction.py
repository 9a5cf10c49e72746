"""Memory extraction: turn a conversational message into memory fragments.

The completion provider is asked for a JSON array of short sentences, each
of which becomes an unpersisted ``MemoryFragment``. Extraction never
raises to the caller: any failure degrades to an empty list.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import datetime
from datetime import timezone
from typing import Any

from recallguard.config import ExtractionConfig
from recallguard.config import LLMConfig
from recallguard.errors import MemoryErrorKind
from recallguard.errors import MemoryOperationError
from recallguard.memory.prompt_builder import EXTRACTION_SYSTEM_PROMPT
from recallguard.memory.prompt_builder import build_extraction_user_prompt
from recallguard.memory.prompt_builder import render_context
from recallguard.memory.schemas import ConversationContext
from recallguard.memory.schemas import MemoryFragment
from recallguard.providers import CompletionProvider
from recallguard.resilience.context import ResilienceContext

logger = logging.getLogger(__name__)

# Regex to strip Markdown code fences wrapping JSON output
_CODE_FENCE_RE = re.compile(
    r"^\s*```(?:json)?\s*\n?(.*?)\n?\s*```\s*$",
    re.DOTALL,
)

_TONE_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("positive", ("love", "happy", "excited")),
    ("negative", ("sad", "worried", "upset")),
    ("anxious", ("nervous", "anxious", "scared")),
)


def detect_emotional_tone(message: str) -> str:
    """Keyword-based tone: positive, negative, anxious or neutral."""
    lowered = message.lower()
    for tone, keywords in _TONE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return tone
    return "neutral"


def parse_extraction_response(raw: str | None) -> list[str]:
    """Parse provider output into fragment texts.

    Accepts a bare JSON array of strings, optionally wrapped in a Markdown
    code fence. Raises ``MemoryOperationError`` (``EXTRACTION_FAILED``) on
    anything else.
    """
    if not raw or not raw.strip():
        raise MemoryOperationError(
            MemoryErrorKind.EXTRACTION_FAILED,
            "No response from provider for memory extraction",
        )

    text = raw.strip()
    match = _CODE_FENCE_RE.match(text)
    if match:
        text = match.group(1).strip()

    try:
        data = json.loads(text)
    except ValueError as exc:
        raise MemoryOperationError(
            MemoryErrorKind.EXTRACTION_FAILED,
            "Failed to parse memory extraction response",
            context={"response": raw[:500], "parse_error": str(exc)},
            original_error=exc,
        ) from exc

    if not isinstance(data, list) or not all(isinstance(item, str) for item in data):
        raise MemoryOperationError(
            MemoryErrorKind.EXTRACTION_FAILED,
            "Invalid memory extraction response format",
            context={"response": raw[:500]},
        )
    return data


class MemoryExtractor:
    """Extracts memory fragments through the completion provider."""

    def __init__(
        self,
        provider: CompletionProvider,
        resilience: ResilienceContext,
        llm_config: LLMConfig | None = None,
        config: ExtractionConfig | None = None,
    ) -> None:
        self._provider = provider
        self._resilience = resilience
        self._llm_config = llm_config or LLMConfig()
        self._config = config or ExtractionConfig()

    def temperature_for(self, extraction_threshold: float | None) -> float:
        if extraction_threshold is None:
            return self._llm_config.temperature
        return max(0.1, extraction_threshold - 0.4)

    async def extract_memory_fragments(
        self,
        message: str,
        user_id: str,
        context: str | dict[str, Any] | None = None,
        extraction_threshold: float | None = None,
    ) -> list[MemoryFragment]:
        """Extract fragments from *message*; ``[]`` on any failure."""
        log_context = {"user_id": user_id, "message_length": len(message)}

        async def _extract() -> list[MemoryFragment]:
            if not user_id:
                raise MemoryOperationError(
                    MemoryErrorKind.INVALID_USER_ID, "user_id is required"
                )
            if not message.strip():
                return []

            context_text = render_context(context)
            user_prompt = build_extraction_user_prompt(message, context_text)
            temperature = self.temperature_for(extraction_threshold)

            raw = await self._resilience.with_retry(
                lambda: self._provider.complete(
                    EXTRACTION_SYSTEM_PROMPT,
                    user_prompt,
                    temperature=temperature,
                    max_tokens=self._llm_config.max_tokens,
                    timeout_seconds=self._llm_config.timeout_seconds,
                ),
                "openai",
                {**log_context, "operation": "memory_extraction"},
            )
            texts = parse_extraction_response(raw)

            timestamp = datetime.now(timezone.utc).isoformat()
            conversation_context = ConversationContext(
                timestamp=timestamp,
                message_context=(
                    context_text or message[: self._config.message_context_chars]
                ),
                emotional_tone=detect_emotional_tone(message),
            )
            fragments = [
                MemoryFragment(
                    user_id=user_id,
                    fragment_text=text.strip(),
                    conversation_context=conversation_context.model_copy(),
                )
                for text in texts
                if text.strip()
            ]
            logger.debug(
                "Extracted %d fragments for user %s", len(fragments), user_id
            )
            return fragments

        return await self._resilience.track(
            "memory_extraction",
            lambda: self._resilience.with_graceful_degradation(
                _extract, [], "memory_extraction", log_context
            ),
            log_context,
        )

    async def batch_extract_memory_fragments(
        self,
        messages: list[str | dict[str, Any]],
        user_id: str,
    ) -> list[MemoryFragment]:
        """Extract from many messages in concurrent chunks.

        Each message is either a string or ``{"text": ..., "context": ...}``.
        A failing chunk is logged and skipped.
        """
        batch_size = self._config.batch_size
        fragments: list[MemoryFragment] = []

        for start in range(0, len(messages), batch_size):
            chunk = messages[start : start + batch_size]
            try:
                results = await asyncio.gather(
                    *(self._extract_one(item, user_id) for item in chunk)
                )
            except Exception:
                logger.exception(
                    "Error processing extraction batch %d-%d",
                    start,
                    start + len(chunk),
                )
            else:
                for result in results:
                    fragments.extend(result)

            if start + batch_size < len(messages):
                await self._resilience.pause(self._config.batch_delay_seconds)

        return fragments

    async def _extract_one(
        self, item: str | dict[str, Any], user_id: str
    ) -> list[MemoryFragment]:
        if isinstance(item, str):
            return await self.extract_memory_fragments(item, user_id)
        text = item.get("text") if isinstance(item, dict) else None
        if not isinstance(text, str):
            logger.warning("Skipping batch item without a text field")
            return []
        return await self.extract_memory_fragments(text, user_id, item.get("context"))
