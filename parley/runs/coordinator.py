"""Run coordinator -- Idle/Running state per conversation plus the during-run queue.

At most one run is Running per conversation. Messages that arrive while
a run is active get a disposition from the conversation's queue mode:

- collect: queued silently, replayed through the pipeline after the run.
- steer:   queued exactly like collect; nothing is injected into the live
           turn (kept as a separate mode so the option round-trips).
- interrupt: the active run is cancelled and the caller resubmits the
           message through the normal pipeline.
"""

from __future__ import annotations

import logging
from enum import StrEnum

from parley.runs.cancellation import CancellationRegistry
from parley.schemas import QueueMode

logger = logging.getLogger(__name__)


class RunStateError(RuntimeError):
    """Raised when a state transition is requested from the wrong state."""


class Disposition(StrEnum):
    PROCEED = "proceed"  # no run active, continue down the pipeline
    QUEUED = "queued"  # held until the active run ends
    RESUBMIT = "resubmit"  # active run interrupted, send the message through again


class RunCoordinator:
    def __init__(self, cancellations: CancellationRegistry | None = None) -> None:
        self.cancellations = cancellations or CancellationRegistry()
        self._running: set[str] = set()
        self._queued: dict[str, list[str]] = {}

    def is_running(self, conversation_id: str) -> bool:
        return conversation_id in self._running

    def running(self) -> list[str]:
        return sorted(self._running)

    def start_run(self, conversation_id: str) -> None:
        """Idle -> Running. Raises RunStateError if a run is already active."""
        if conversation_id in self._running:
            raise RunStateError(f"run already active for {conversation_id}")
        self._running.add(conversation_id)
        logger.debug("Run started for %s", conversation_id)

    def end_run(self, conversation_id: str) -> list[str]:
        """Running -> Idle. Returns (and clears) everything queued during the run."""
        self._running.discard(conversation_id)
        queued = self._queued.pop(conversation_id, [])
        logger.debug("Run ended for %s (%d queued)", conversation_id, len(queued))
        return queued

    def enqueue(self, conversation_id: str, unit: str) -> int:
        queue = self._queued.setdefault(conversation_id, [])
        queue.append(unit)
        return len(queue)

    def queue_depth(self, conversation_id: str) -> int:
        return len(self._queued.get(conversation_id, []))

    def handle_during_run(
        self,
        conversation_id: str,
        unit: str,
        mode: QueueMode | str = QueueMode.COLLECT,
    ) -> Disposition:
        """Apply the queue mode to a message that arrived for ``conversation_id``."""
        if conversation_id not in self._running:
            return Disposition.PROCEED

        try:
            mode = QueueMode(mode)
        except ValueError:
            logger.warning("Unknown queue mode %r for %s, using collect", mode, conversation_id)
            mode = QueueMode.COLLECT

        if mode is QueueMode.INTERRUPT:
            if not self.cancellations.cancel(conversation_id, reason="interrupt"):
                logger.debug("Interrupt for %s found no live handle", conversation_id)
            return Disposition.RESUBMIT

        depth = self.enqueue(conversation_id, unit)
        logger.debug("Queued message for %s (mode=%s, depth=%d)", conversation_id, mode, depth)
        return Disposition.QUEUED
