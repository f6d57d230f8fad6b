"""Fragment reassembly for long pastes the transport split into several messages.

Telegram cuts anything over 4096 characters into consecutive messages
that arrive a few hundred milliseconds apart. A message at or above the
start threshold opens a buffer; follow-ups from the same author with an
adjacent sequence number, arriving inside the time gap and within the
size caps, are appended. The buffer is flushed (parts concatenated in
arrival order) when its timer fires or when a non-matching message
forces it out.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from parley.intake.timers import KeyedTimers

logger = logging.getLogger(__name__)

START_THRESHOLD = 4000  # chars; shorter messages are never split by the transport
MAX_PARTS = 12
MAX_CHARS = 50000
TIME_GAP = 1.5  # seconds between fragments
ID_GAP = 1  # allowed skipped sequence numbers between fragments

FlushCallback = Callable[[str], Awaitable[None]]


@dataclass
class FragmentEntry:
    """An open reassembly buffer for one conversation."""

    author_id: str
    last_sequence_number: int
    last_timestamp: float
    parts: list[str] = field(default_factory=list)
    total_length: int = 0

    def append(self, text: str, sequence_number: int, now: float) -> None:
        self.parts.append(text)
        self.total_length += len(text)
        self.last_sequence_number = sequence_number
        self.last_timestamp = now

    def combined(self) -> str:
        return "".join(self.parts)


class FragmentReassembler:
    def __init__(
        self,
        *,
        start_threshold: int = START_THRESHOLD,
        max_parts: int = MAX_PARTS,
        max_chars: int = MAX_CHARS,
        time_gap: float = TIME_GAP,
        id_gap: int = ID_GAP,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.start_threshold = start_threshold
        self.max_parts = max_parts
        self.max_chars = max_chars
        self.time_gap = time_gap
        self.id_gap = id_gap
        self._clock = clock
        self._entries: dict[str, FragmentEntry] = {}
        self._timers = KeyedTimers("fragments")

    def observe(
        self,
        conversation_id: str,
        author_id: str,
        sequence_number: int,
        text: str,
        on_flush: FlushCallback,
    ) -> list[str]:
        """Feed one transport message through the reassembler.

        Returns the units that are ready right now, in arrival order: a
        forced flush of the previous buffer (if any) followed by ``text``
        itself when it is short enough to pass through. An empty list
        means ``text`` was buffered and will reach ``on_flush`` later.
        """
        now = self._clock()
        ready: list[str] = []
        entry = self._entries.get(conversation_id)

        if entry is not None:
            if self._continues(entry, author_id, sequence_number, text, now):
                entry.append(text, sequence_number, now)
                self._arm(conversation_id, on_flush)
                logger.debug(
                    "Fragment %d appended for %s (%d parts, %d chars)",
                    sequence_number,
                    conversation_id,
                    len(entry.parts),
                    entry.total_length,
                )
                return ready
            # Not a continuation: force the old buffer out, then look at text fresh.
            ready.append(self._take(conversation_id))

        if len(text) >= self.start_threshold:
            self._entries[conversation_id] = FragmentEntry(
                author_id=author_id,
                last_sequence_number=sequence_number,
                last_timestamp=now,
                parts=[text],
                total_length=len(text),
            )
            self._arm(conversation_id, on_flush)
            logger.debug("Opened fragment buffer for %s (%d chars)", conversation_id, len(text))
            return ready

        ready.append(text)
        return ready

    def _continues(
        self,
        entry: FragmentEntry,
        author_id: str,
        sequence_number: int,
        text: str,
        now: float,
    ) -> bool:
        return (
            entry.author_id == author_id
            and sequence_number - entry.last_sequence_number <= self.id_gap + 1
            and now - entry.last_timestamp <= self.time_gap
            and entry.total_length + len(text) <= self.max_chars
            and len(entry.parts) < self.max_parts
        )

    def _arm(self, conversation_id: str, on_flush: FlushCallback) -> None:
        async def fire() -> None:
            if conversation_id not in self._entries:
                return
            combined = self._take(conversation_id)
            logger.debug("Fragment timer flush for %s (%d chars)", conversation_id, len(combined))
            await on_flush(combined)

        self._timers.schedule(conversation_id, self.time_gap, fire)

    def _take(self, conversation_id: str) -> str:
        entry = self._entries.pop(conversation_id)
        self._timers.cancel(conversation_id)
        return entry.combined()

    def has_open_entry(self, conversation_id: str) -> bool:
        return conversation_id in self._entries

    def stop(self) -> None:
        """Drop every open buffer and cancel its timer."""
        self._timers.cancel_all()
        self._entries.clear()

    async def drain(self) -> None:
        await self._timers.drain()
