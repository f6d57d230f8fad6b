"""Model failover -- cascade through a model chain with per-model cooldown.

A retryable failure (429, 5xx, context overflow, timeout) parks the model
for the cooldown duration and moves on to the next candidate. A
non-retryable failure stops the cascade immediately. The cooldown table
is shared by every conversation using the wrapper.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from parley.llm.provider import AllModelsFailedError, Provider, ProviderError
from parley.schemas import Completion, ConversationTurn

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN = 60.0  # seconds


class CooldownTable:
    """model name -> expiry timestamp, safe across threads."""

    def __init__(
        self,
        duration: float = DEFAULT_COOLDOWN,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.duration = duration
        self._clock = clock
        self._lock = threading.Lock()
        self._until: dict[str, float] = {}

    def cool_down(self, model: str) -> None:
        with self._lock:
            self._until[model] = self._clock() + self.duration

    def is_cooling_down(self, model: str) -> bool:
        with self._lock:
            expiry = self._until.get(model)
            if expiry is None:
                return False
            if self._clock() >= expiry:
                del self._until[model]
                return False
            return True

    def remaining(self, model: str) -> float:
        with self._lock:
            expiry = self._until.get(model)
            if expiry is None:
                return 0.0
            return max(0.0, expiry - self._clock())

    def snapshot(self) -> dict[str, float]:
        """Remaining cooldown per model, expired entries dropped."""
        with self._lock:
            now = self._clock()
            for model in [m for m, t in self._until.items() if t <= now]:
                del self._until[model]
            return {m: round(t - now, 1) for m, t in self._until.items()}

    def clear(self, model: str | None = None) -> None:
        with self._lock:
            if model is None:
                self._until.clear()
            else:
                self._until.pop(model, None)


class FailoverProvider:
    """Wraps a Provider and tries ``[primary, *fallbacks]`` in order."""

    def __init__(
        self,
        provider: Provider,
        *,
        cooldowns: CooldownTable | None = None,
        timeout: float | None = None,
    ) -> None:
        self.provider = provider
        self.cooldowns = cooldowns or CooldownTable()
        self.timeout = timeout

    async def complete_with_failover(
        self,
        turns: list[ConversationTurn],
        primary: str,
        fallbacks: list[str] | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> tuple[Completion, str]:
        """Return ``(completion, model_used)`` from the first healthy candidate.

        Plain completions (``tools`` is None) are wrapped in a Completion
        with just the text so callers handle one shape.
        """
        candidates: list[str] = []
        for name in [primary, *(fallbacks or [])]:
            if name and name not in candidates:
                candidates.append(name)

        last_error: ProviderError | None = None
        attempted = 0

        for model in candidates:
            if self.cooldowns.is_cooling_down(model):
                logger.debug(
                    "Skipping %s (cooldown %.0fs left)", model, self.cooldowns.remaining(model)
                )
                continue

            attempted += 1
            try:
                completion = await self._call(turns, model, tools)
            except ProviderError as e:
                last_error = e
                if not e.retryable:
                    logger.warning("Model %s failed (non-retryable): %s", model, e)
                    raise
                self.cooldowns.cool_down(model)
                logger.warning(
                    "Model %s failed, cooling down for %.0fs: %s",
                    model,
                    self.cooldowns.duration,
                    e,
                )
                continue

            if model != primary:
                logger.info("Served by fallback model %s (primary %s)", model, primary)
            return completion, model

        if attempted == 0:
            raise AllModelsFailedError("all models are in cooldown")
        raise AllModelsFailedError(f"all models failed: {last_error}", last_error=last_error)

    async def _call(
        self,
        turns: list[ConversationTurn],
        model: str,
        tools: list[dict[str, Any]] | None,
    ) -> Completion:
        if tools is None:
            call = self._complete_plain(turns, model)
        else:
            call = self.provider.complete_with_tools(turns, tools, model=model)

        if self.timeout is None:
            completion = await call
        else:
            try:
                completion = await asyncio.wait_for(call, timeout=self.timeout)
            except TimeoutError as e:
                raise ProviderError(
                    f"provider call exceeded {self.timeout:.0f}s", model=model, retryable=True
                ) from e

        if not completion.model:
            completion.model = model
        return completion

    async def _complete_plain(self, turns: list[ConversationTurn], model: str) -> Completion:
        text = await self.provider.complete(turns, model=model)
        return Completion(text=text, model=model)
