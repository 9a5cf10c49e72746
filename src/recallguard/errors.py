"""Error taxonomy for memory operations.

Every failure raised by a provider, the datastore or our own validation
is normalised into a ``MemoryOperationError`` carrying one kind from a
closed set, before any retry or degradation decision is made.

Dependencies raise one of a few recognised shapes:

* ``ProviderError`` (HTTP status from the completion/embedding API),
* ``TimeoutError`` (builtin, raised by adapters and by redis),
* ``StoreError`` (datastore error code, including the no-rows sentinel),
* ``redis.exceptions.RedisError`` (raised by the Redis datastore),
* ``ConnectionError`` (builtin network failures).

Anything else is classified by its message only.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

# ---------------------------------------------------------------------------
# Kinds
# ---------------------------------------------------------------------------


class MemoryErrorKind(str, Enum):
    """Closed set of failure kinds."""

    PROVIDER_RATE_LIMIT = "provider_rate_limit"
    PROVIDER_QUOTA_EXCEEDED = "provider_quota_exceeded"
    PROVIDER_API_ERROR = "provider_api_error"
    PROVIDER_TIMEOUT = "provider_timeout"
    STORE_CONNECTION = "store_connection"
    STORE_QUERY = "store_query"
    STORE_CONSTRAINT = "store_constraint"
    STORE_TIMEOUT = "store_timeout"
    INVALID_INPUT = "invalid_input"
    INVALID_USER_ID = "invalid_user_id"
    RECORD_NOT_FOUND = "record_not_found"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    EXTRACTION_FAILED = "extraction_failed"
    EMBEDDING_FAILED = "embedding_failed"
    SEARCH_FAILED = "search_failed"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Raw dependency error shapes
# ---------------------------------------------------------------------------


class ProviderError(Exception):
    """Raised by completion/embedding adapters.

    ``status`` is the HTTP status code, or ``None`` when the request never
    got a response (DNS failure, refused connection, ...).
    """

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        error_type: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.error_type = error_type


# Datastore sentinel for "the filtered query matched no rows".
NO_ROWS = "NO_ROWS"


class StoreError(Exception):
    """Raised by datastore adapters with a SQLSTATE-like ``code``."""

    def __init__(self, message: str, *, code: str) -> None:
        super().__init__(message)
        self.code = code


# ---------------------------------------------------------------------------
# Normalised error
# ---------------------------------------------------------------------------


class MemoryOperationError(Exception):
    """A classified failure of a memory operation."""

    def __init__(
        self,
        kind: MemoryErrorKind,
        message: str,
        *,
        is_retryable: bool = False,
        context: dict[str, Any] | None = None,
        original_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.is_retryable = is_retryable
        self.context: dict[str, Any] = dict(context or {})
        self.timestamp = time.time()
        self.original_error = original_error

    def to_dict(self) -> dict[str, Any]:
        """Structured shape used for logging."""
        data: dict[str, Any] = {
            "name": type(self).__name__,
            "kind": self.kind.value,
            "message": self.message,
            "is_retryable": self.is_retryable,
            "context": self.context,
            "timestamp": self.timestamp,
        }
        if self.original_error is not None:
            data["original_error"] = {
                "name": type(self.original_error).__name__,
                "message": str(self.original_error),
            }
        return data

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(kind={self.kind.value!r}, "
            f"message={self.message!r}, is_retryable={self.is_retryable})"
        )


class CircuitOpenError(MemoryOperationError):
    """Raised without calling the dependency while its breaker is open."""

    def __init__(
        self,
        dependency: str,
        *,
        next_attempt_time: float,
        failure_count: int,
    ) -> None:
        super().__init__(
            _CIRCUIT_KINDS.get(dependency, MemoryErrorKind.UNKNOWN),
            f"Circuit breaker is open for {dependency}. "
            "Service temporarily unavailable.",
            is_retryable=False,
            context={
                "circuit_breaker_open": True,
                "dependency": dependency,
                "next_attempt_time": next_attempt_time,
                "failure_count": failure_count,
            },
        )
        self.dependency = dependency
        self.next_attempt_time = next_attempt_time


_CIRCUIT_KINDS = {
    "openai": MemoryErrorKind.PROVIDER_API_ERROR,
    "database": MemoryErrorKind.STORE_CONNECTION,
    "vector_search": MemoryErrorKind.SEARCH_FAILED,
}


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

_PROVIDER_OPERATION_HINTS = ("openai", "embedding", "completion", "provider")
_AUTH_HINTS = ("jwt", "auth", "token expired", "invalid token")


def _is_provider_bound(context: dict[str, Any]) -> bool:
    if context.get("dependency") == "openai":
        return True
    operation = str(context.get("operation", "")).lower()
    return any(hint in operation for hint in _PROVIDER_OPERATION_HINTS)


def _classify_provider(
    exc: ProviderError, context: dict[str, Any]
) -> MemoryOperationError:
    ctx = {**context, "status": exc.status, "type": exc.error_type}
    if exc.status == 429:
        return MemoryOperationError(
            MemoryErrorKind.PROVIDER_RATE_LIMIT,
            "Provider rate limit exceeded",
            is_retryable=True,
            context=ctx,
            original_error=exc,
        )
    if exc.status == 402:
        return MemoryOperationError(
            MemoryErrorKind.PROVIDER_QUOTA_EXCEEDED,
            "Provider quota exceeded",
            is_retryable=False,
            context=ctx,
            original_error=exc,
        )
    if exc.status is None or exc.status >= 500:
        return MemoryOperationError(
            MemoryErrorKind.PROVIDER_API_ERROR,
            f"Provider server error: {exc}",
            is_retryable=True,
            context=ctx,
            original_error=exc,
        )
    return MemoryOperationError(
        MemoryErrorKind.PROVIDER_API_ERROR,
        f"Provider API error: {exc}",
        is_retryable=False,
        context=ctx,
        original_error=exc,
    )


def _classify_store(exc: StoreError, context: dict[str, Any]) -> MemoryOperationError:
    ctx = {**context, "store_code": exc.code}
    code = exc.code
    if code == NO_ROWS:
        return MemoryOperationError(
            MemoryErrorKind.RECORD_NOT_FOUND,
            "Memory fragment not found",
            is_retryable=False,
            context=ctx,
            original_error=exc,
        )
    if code.startswith("08") or code == "CONNECTION":
        return MemoryOperationError(
            MemoryErrorKind.STORE_CONNECTION,
            f"Datastore connection error: {exc}",
            is_retryable=True,
            context=ctx,
            original_error=exc,
        )
    if code.startswith("23"):
        return MemoryOperationError(
            MemoryErrorKind.STORE_CONSTRAINT,
            f"Datastore constraint violation: {exc}",
            is_retryable=False,
            context=ctx,
            original_error=exc,
        )
    return MemoryOperationError(
        MemoryErrorKind.STORE_QUERY,
        f"Datastore query error: {exc}",
        is_retryable=False,
        context=ctx,
        original_error=exc,
    )


def classify_error(
    exc: BaseException, context: dict[str, Any] | None = None
) -> MemoryOperationError:
    """Normalise *exc* into a ``MemoryOperationError``.

    Rules are checked in a fixed order; the first match wins. An error that
    is already classified is returned as-is with *context* merged under its
    own context.
    """
    ctx: dict[str, Any] = dict(context or {})

    if isinstance(exc, MemoryOperationError):
        exc.context = {**ctx, **exc.context}
        return exc

    if isinstance(exc, ProviderError):
        return _classify_provider(exc, ctx)

    is_redis_timeout = isinstance(exc, RedisTimeoutError)
    if isinstance(exc, TimeoutError) or is_redis_timeout:
        provider_bound = _is_provider_bound(ctx) and not is_redis_timeout
        return MemoryOperationError(
            (
                MemoryErrorKind.PROVIDER_TIMEOUT
                if provider_bound
                else MemoryErrorKind.STORE_TIMEOUT
            ),
            f"Operation timed out: {exc}",
            is_retryable=True,
            context=ctx,
            original_error=exc,
        )

    if isinstance(exc, StoreError):
        return _classify_store(exc, ctx)

    if isinstance(exc, RedisConnectionError):
        return MemoryOperationError(
            MemoryErrorKind.STORE_CONNECTION,
            f"Datastore connection error: {exc}",
            is_retryable=True,
            context={**ctx, "store_code": "CONNECTION"},
            original_error=exc,
        )
    if isinstance(exc, RedisError):
        return MemoryOperationError(
            MemoryErrorKind.STORE_QUERY,
            f"Datastore query error: {exc}",
            is_retryable=False,
            context=ctx,
            original_error=exc,
        )

    message = str(exc)
    lowered = message.lower()
    if any(hint in lowered for hint in _AUTH_HINTS):
        return MemoryOperationError(
            MemoryErrorKind.UNAUTHORIZED,
            "Authentication failed",
            is_retryable=False,
            context=ctx,
            original_error=exc,
        )

    if isinstance(exc, ConnectionError):
        return MemoryOperationError(
            MemoryErrorKind.STORE_CONNECTION,
            f"Network connection failed: {exc}",
            is_retryable=True,
            context=ctx,
            original_error=exc,
        )

    return MemoryOperationError(
        MemoryErrorKind.UNKNOWN,
        message or "Unknown error occurred",
        is_retryable=False,
        context=ctx,
        original_error=exc,
    )


# ---------------------------------------------------------------------------
# User-facing messages
# ---------------------------------------------------------------------------

_USER_MESSAGES: dict[MemoryErrorKind, str] = {
    MemoryErrorKind.PROVIDER_RATE_LIMIT: (
        "The AI service is currently busy. Please try again in a moment."
    ),
    MemoryErrorKind.PROVIDER_QUOTA_EXCEEDED: (
        "The AI service quota has been exceeded. Please contact support."
    ),
    MemoryErrorKind.PROVIDER_TIMEOUT: (
        "The AI service took too long to respond. Please try again."
    ),
    MemoryErrorKind.STORE_CONNECTION: (
        "Unable to connect to the database. "
        "Please check your connection and try again."
    ),
    MemoryErrorKind.STORE_TIMEOUT: (
        "The database took too long to respond. Please try again."
    ),
    MemoryErrorKind.UNAUTHORIZED: "Please log in to access your memories.",
    MemoryErrorKind.FORBIDDEN: "You do not have access to these memories.",
    MemoryErrorKind.RECORD_NOT_FOUND: "The requested memory was not found.",
    MemoryErrorKind.INVALID_INPUT: "Please check your input and try again.",
    MemoryErrorKind.INVALID_USER_ID: "Please log in to access your memories.",
    MemoryErrorKind.EXTRACTION_FAILED: (
        "Unable to process your message for memory extraction. "
        "Your conversation will continue normally."
    ),
    MemoryErrorKind.EMBEDDING_FAILED: (
        "Unable to process memory content. Please try again."
    ),
    MemoryErrorKind.SEARCH_FAILED: (
        "Unable to search your memories at the moment. Please try again."
    ),
}

_DEFAULT_USER_MESSAGE = "An unexpected error occurred. Please try again."


def user_friendly_message(error: MemoryOperationError) -> str:
    """Short sentence suitable for showing *error* to an end user."""
    return _USER_MESSAGES.get(error.kind, _DEFAULT_USER_MESSAGE)
