"""Session store -- prior session text and per-conversation options.

The orchestrator keeps the last assistant answer as the "prior session
text" for the next run, and reads the queue mode and debounce override
from options. InMemorySessionStore bounds memory with LRU eviction.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Protocol

MAX_CONVERSATIONS = 1000

QUEUE_MODE_OPTION = "queue_mode"
DEBOUNCE_MS_OPTION = "debounce_ms"
MAX_DEBOUNCE_MS = 10_000  # upper bound for the per-conversation debounce option


class SessionStore(Protocol):
    def get_history(self, conversation_id: str) -> str: ...

    def set_history(self, conversation_id: str, text: str) -> None: ...

    def get_option(self, conversation_id: str, key: str) -> str | None: ...

    def set_option(self, conversation_id: str, key: str, value: str | None) -> None: ...

    def clear(self, conversation_id: str) -> None: ...


@dataclass
class _Session:
    history: str = ""
    options: dict[str, str] = field(default_factory=dict)


class InMemorySessionStore:
    """Process-local SessionStore with LRU eviction."""

    def __init__(self, max_conversations: int = MAX_CONVERSATIONS) -> None:
        self._max = max_conversations
        self._sessions: OrderedDict[str, _Session] = OrderedDict()

    def _get_or_create(self, conversation_id: str) -> _Session:
        if conversation_id in self._sessions:
            self._sessions.move_to_end(conversation_id)
            return self._sessions[conversation_id]

        while len(self._sessions) >= self._max:
            self._sessions.popitem(last=False)

        session = _Session()
        self._sessions[conversation_id] = session
        return session

    def get_history(self, conversation_id: str) -> str:
        session = self._sessions.get(conversation_id)
        return session.history if session else ""

    def set_history(self, conversation_id: str, text: str) -> None:
        self._get_or_create(conversation_id).history = text

    def get_option(self, conversation_id: str, key: str) -> str | None:
        session = self._sessions.get(conversation_id)
        return session.options.get(key) if session else None

    def set_option(self, conversation_id: str, key: str, value: str | None) -> None:
        options = self._get_or_create(conversation_id).options
        if value is None:
            options.pop(key, None)
        else:
            options[key] = value

    def clear(self, conversation_id: str) -> None:
        """Forget the prior session text; options survive."""
        session = self._sessions.get(conversation_id)
        if session:
            session.history = ""

    def __len__(self) -> int:
        return len(self._sessions)
