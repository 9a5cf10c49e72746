"""Graceful degradation: substitute a fallback instead of raising."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable
from collections.abc import Callable
from typing import Any
from typing import TypeVar
from typing import Union

from recallguard.errors import classify_error
from recallguard.resilience.health import log_memory_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

Fallback = Union[T, Callable[[], Union[T, Awaitable[T]]]]


async def resolve_fallback(fallback: Any) -> Any:
    """Evaluate a fallback that may be a value, a function or a coroutine function."""
    if not callable(fallback):
        return fallback
    value = fallback()
    if inspect.isawaitable(value):
        value = await value
    return value


async def with_graceful_degradation(
    operation: Callable[[], Awaitable[T]],
    fallback: Fallback[T],
    operation_name: str,
    context: dict[str, Any] | None = None,
) -> T:
    """Await *operation*; on any failure log it and return *fallback*.

    The fallback itself is expected not to raise. Cancellation is not an
    ``Exception`` and still propagates.
    """
    try:
        return await operation()
    except Exception as exc:
        error = classify_error(
            exc,
            {
                **(context or {}),
                "operation": operation_name,
                "graceful_degradation": True,
            },
        )
        log_memory_error(error)
        logger.warning(
            "Operation %s failed, using fallback: %s", operation_name, error.message
        )
        return await resolve_fallback(fallback)
