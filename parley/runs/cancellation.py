"""Cancellation registry -- conversation id -> handle for its active run.

A handle wraps the asyncio task executing the run. Cancelling it raises
CancelledError at whatever the run is awaiting: the provider HTTP call,
an approval wait, or a tool subprocess. Tool code that blocks outside
the loop (threads, C extensions) only notices once it returns.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class RunHandle:
    conversation_id: str
    task: asyncio.Task
    started_at: float = field(default_factory=time.monotonic)
    cancel_reason: str | None = None

    def cancel(self, reason: str = "stop") -> bool:
        """Request cancellation. Returns False if the task already finished."""
        if self.task.done():
            return False
        self.cancel_reason = reason
        return self.task.cancel(msg=reason)

    @property
    def cancelled(self) -> bool:
        return self.cancel_reason is not None


class CancellationRegistry:
    def __init__(self) -> None:
        self._handles: dict[str, RunHandle] = {}

    def register(self, conversation_id: str, task: asyncio.Task) -> RunHandle:
        handle = RunHandle(conversation_id=conversation_id, task=task)
        previous = self._handles.get(conversation_id)
        if previous is not None and not previous.task.done():
            logger.warning("Replacing live run handle for %s", conversation_id)
        self._handles[conversation_id] = handle
        return handle

    def unregister(self, conversation_id: str, handle: RunHandle | None = None) -> None:
        """Remove the handle. With ``handle`` given, only if it is still the current one."""
        current = self._handles.get(conversation_id)
        if current is None:
            return
        if handle is not None and current is not handle:
            return
        del self._handles[conversation_id]

    def get(self, conversation_id: str) -> RunHandle | None:
        return self._handles.get(conversation_id)

    def cancel(self, conversation_id: str, reason: str = "stop") -> bool:
        """Cancel the conversation's active run. False means nothing to stop."""
        handle = self._handles.get(conversation_id)
        if handle is None:
            return False
        cancelled = handle.cancel(reason)
        if cancelled:
            logger.info("Cancelled run for %s (%s)", conversation_id, reason)
        return cancelled

    def active(self) -> list[str]:
        return [cid for cid, h in self._handles.items() if not h.task.done()]

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._handles
