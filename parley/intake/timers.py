"""Keyed one-shot timers on the asyncio loop.

Each key holds at most one pending timer. Scheduling a key that already
has a timer cancels the old one, so "append to buffer + reset timer" is
a single synchronous step for callers. Once a timer fires it is removed
from the table before its callback starts, which means a later reset
never cancels a flush that is already delivering.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class KeyedTimers:
    def __init__(self, name: str = "timer") -> None:
        self._name = name
        self._pending: dict[Hashable, asyncio.Task] = {}
        self._running: set[asyncio.Task] = set()

    def schedule(self, key: Hashable, delay: float, callback: TimerCallback) -> None:
        """(Re)start the timer for ``key``. Must be called on the event loop."""
        self.cancel(key)
        task = asyncio.get_running_loop().create_task(
            self._fire(key, delay, callback), name=f"{self._name}:{key}"
        )
        self._pending[key] = task
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    def cancel(self, key: Hashable) -> bool:
        """Cancel the pending timer for ``key``. Returns True if one existed."""
        task = self._pending.pop(key, None)
        if task is None:
            return False
        task.cancel()
        return True

    def cancel_all(self) -> None:
        for task in self._pending.values():
            task.cancel()
        self._pending.clear()

    def is_pending(self, key: Hashable) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    async def _fire(self, key: Hashable, delay: float, callback: TimerCallback) -> None:
        await asyncio.sleep(delay)
        if self._pending.get(key) is asyncio.current_task():
            del self._pending[key]
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("%s callback failed for %s", self._name, key)

    async def drain(self) -> None:
        """Wait until every timer has fired (or been cancelled) and its callback returned."""
        while self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)
