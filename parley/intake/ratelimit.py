"""Sliding-window admission control, one window per conversation."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS = 10
DEFAULT_WINDOW = 60.0  # seconds


class RateLimiter:
    """Admits at most ``max_requests`` per conversation within ``window`` seconds.

    Admission timestamps are kept per conversation in arrival order, so
    pruning only ever pops from the left. A single lock guards the table;
    every operation is short and never awaits, so it is safe both on the
    event loop and from worker threads.
    """

    def __init__(
        self,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window: float = DEFAULT_WINDOW,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests if max_requests > 0 else DEFAULT_MAX_REQUESTS
        self.window = window if window > 0 else DEFAULT_WINDOW
        self._clock = clock
        self._lock = threading.Lock()
        self._history: dict[str, deque[float]] = {}

    def _prune(self, conversation_id: str, now: float) -> deque[float]:
        history = self._history.setdefault(conversation_id, deque())
        cutoff = now - self.window
        while history and history[0] <= cutoff:
            history.popleft()
        return history

    def allow(self, conversation_id: str) -> bool:
        """Record and admit a request, or reject it if the window is full."""
        with self._lock:
            now = self._clock()
            history = self._prune(conversation_id, now)
            if len(history) >= self.max_requests:
                logger.debug(
                    "Rate limit hit for %s (%d in %.0fs window)",
                    conversation_id,
                    len(history),
                    self.window,
                )
                return False
            history.append(now)
            return True

    def remaining_cooldown(self, conversation_id: str) -> float:
        """Seconds until the next request would be admitted (0.0 if now)."""
        with self._lock:
            now = self._clock()
            history = self._prune(conversation_id, now)
            if len(history) < self.max_requests:
                return 0.0
            return max(0.0, history[0] + self.window - now)

    def request_count(self, conversation_id: str) -> int:
        """Number of admitted requests currently inside the window."""
        with self._lock:
            return len(self._prune(conversation_id, self._clock()))

    def reset(self, conversation_id: str) -> None:
        with self._lock:
            self._history.pop(conversation_id, None)

    def reset_all(self) -> None:
        with self._lock:
            self._history.clear()
