"""Debouncer -- coalesces quick consecutive messages into one unit of work.

Messages from the same conversation that arrive within the debounce
window are joined with newlines and handed to the flush callback once
the window passes without a new arrival. This merges distinct quick
sends; transport-level splits of one paste are the FragmentReassembler's
job.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from parley.intake.timers import KeyedTimers

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 1.5  # seconds

FlushCallback = Callable[[str], Awaitable[None]]


class Debouncer:
    def __init__(self, window: float = DEFAULT_WINDOW) -> None:
        self.window = window if window > 0 else DEFAULT_WINDOW
        self._buffers: dict[str, list[str]] = {}
        self._overrides: dict[str, float] = {}
        self._timers = KeyedTimers("debounce")
        self._stopped = False

    def set_window(self, conversation_id: str, seconds: float | None) -> None:
        """Override the window for one conversation (None restores the default)."""
        if seconds is None:
            self._overrides.pop(conversation_id, None)
            return
        self._overrides[conversation_id] = max(0.0, seconds)

    def window_for(self, conversation_id: str) -> float:
        return self._overrides.get(conversation_id, self.window)

    def debounce(
        self,
        conversation_id: str,
        text: str,
        on_flush: FlushCallback,
        *,
        window: float | None = None,
    ) -> None:
        """Buffer ``text`` and (re)start the conversation's flush timer.

        ``window`` overrides the configured window for this arrival.

        Appending and resetting the timer happen without yielding to the
        loop, so concurrent arrivals can't lose an update.
        """
        if self._stopped:
            logger.debug("Debouncer stopped, dropping message for %s", conversation_id)
            return

        self._buffers.setdefault(conversation_id, []).append(text)

        async def fire() -> None:
            await self._flush(conversation_id, on_flush)

        delay = self.window_for(conversation_id) if window is None else max(0.0, window)
        self._timers.schedule(conversation_id, delay, fire)

    async def _flush(self, conversation_id: str, on_flush: FlushCallback) -> None:
        if self._stopped:
            return
        buffer = self._buffers.pop(conversation_id, None)
        if not buffer:
            return
        logger.debug("Debounce flush for %s: %d message(s)", conversation_id, len(buffer))
        await on_flush("\n".join(buffer))

    def has_pending(self, conversation_id: str) -> bool:
        return conversation_id in self._buffers

    def pending_count(self) -> int:
        """Number of conversations with buffered, unflushed messages."""
        return len(self._buffers)

    def stop(self) -> None:
        """Cancel every pending timer and refuse further scheduling."""
        self._stopped = True
        self._timers.cancel_all()
        self._buffers.clear()

    async def drain(self) -> None:
        await self._timers.drain()
