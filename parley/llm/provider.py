"""Provider contract and error taxonomy for LLM backends.

Cancellation is delivered the asyncio way: cancelling the task that
awaits complete()/complete_with_tools() aborts the in-flight request.
"""

from __future__ import annotations

from typing import Any, Protocol

from parley.schemas import Completion, ConversationTurn

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
_CONTEXT_LENGTH_MARKER = "context_length_exceeded"


def is_retryable_error(status_code: int | None, body: str = "") -> bool:
    """True for rate limits, 5xx gateway/server errors, and context overflow."""
    if status_code in RETRYABLE_STATUS_CODES:
        return True
    return _CONTEXT_LENGTH_MARKER in (body or "")


class ProviderError(RuntimeError):
    """A failed provider call.

    ``status_code`` is None for transport-level failures (timeouts,
    connection errors). ``retryable`` decides whether failover moves on
    to the next model.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: str = "",
        model: str | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.model = model
        self._retryable = retryable

    @property
    def retryable(self) -> bool:
        if self._retryable is not None:
            return self._retryable
        return is_retryable_error(self.status_code, self.body)


class AllModelsFailedError(ProviderError):
    """Every candidate in the failover chain failed or was cooling down."""

    def __init__(self, message: str, *, last_error: ProviderError | None = None) -> None:
        super().__init__(
            message,
            status_code=last_error.status_code if last_error else None,
            body=last_error.body if last_error else "",
            model=last_error.model if last_error else None,
            retryable=False,
        )
        self.last_error = last_error


class Provider(Protocol):
    async def complete(
        self, turns: list[ConversationTurn], *, model: str | None = None
    ) -> str:
        """Plain completion without tool schema."""

    async def complete_with_tools(
        self,
        turns: list[ConversationTurn],
        tools: list[dict[str, Any]],
        *,
        model: str | None = None,
    ) -> Completion:
        """Completion with tool definitions; may return tool calls instead of text."""
