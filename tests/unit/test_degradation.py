"""Graceful degradation tests."""

from __future__ import annotations

import asyncio
import logging

import pytest

from recallguard.errors import ProviderError
from recallguard.resilience import with_graceful_degradation


async def _fails():
    raise ProviderError("down", status=503)


async def _succeeds():
    return ["fresh"]


class TestWithGracefulDegradation:
    async def test_returns_result_on_success(self):
        assert await with_graceful_degradation(_succeeds, [], "op") == ["fresh"]

    async def test_value_fallback(self):
        assert await with_graceful_degradation(_fails, [], "op") == []

    async def test_sync_callable_fallback(self):
        result = await with_graceful_degradation(_fails, lambda: "stale", "op")
        assert result == "stale"

    async def test_async_callable_fallback(self):
        async def fallback():
            return ["from text search"]

        result = await with_graceful_degradation(_fails, fallback, "op")
        assert result == ["from text search"]

    async def test_fallback_not_evaluated_on_success(self):
        calls = []

        def fallback():
            calls.append(1)
            return None

        await with_graceful_degradation(_succeeds, fallback, "op")
        assert calls == []

    async def test_logs_warning(self, caplog):
        with caplog.at_level(logging.WARNING):
            await with_graceful_degradation(
                _fails, None, "memory_extraction", {"user_id": "u1"}
            )
        assert "Operation memory_extraction failed, using fallback" in caplog.text

    async def test_cancellation_propagates(self):
        async def cancelled():
            raise asyncio.CancelledError

        with pytest.raises(asyncio.CancelledError):
            await with_graceful_degradation(cancelled, [], "op")
