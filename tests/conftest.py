"""Shared fakes and fixtures. No network, no database."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from parley.config import Settings
from parley.llm.provider import ProviderError
from parley.schemas import Completion, ConversationTurn

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class RecordingTransport:
    """Transport that records everything it is asked to deliver."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[tuple[str, str]] = []
        self.prompts: list[tuple[str, str, str]] = []

    async def send(self, conversation_id: str, text: str) -> None:
        if self.fail:
            raise RuntimeError("transport down")
        self.sent.append((conversation_id, text))

    async def send_approval_prompt(
        self, conversation_id: str, request_id: str, command: str
    ) -> None:
        if self.fail:
            raise RuntimeError("transport down")
        self.prompts.append((conversation_id, request_id, command))

    def texts(self, conversation_id: str | None = None) -> list[str]:
        return [t for cid, t in self.sent if conversation_id is None or cid == conversation_id]


class ScriptedProvider:
    """Provider returning queued results per model.

    A script entry is a Completion, a plain string (text answer), or an
    exception instance to raise. Models without a script raise a 500.
    """

    def __init__(self) -> None:
        self.scripts: dict[str, list[Any]] = {}
        self.calls: list[tuple[str, str, list[ConversationTurn]]] = []
        self.gate: asyncio.Event | None = None

    def script(self, model: str, *results: Any) -> None:
        self.scripts.setdefault(model, []).extend(results)

    async def _next(self, kind: str, turns: list[ConversationTurn], model: str | None) -> Any:
        model = model or "default"
        self.calls.append((kind, model, list(turns)))
        if self.gate is not None:
            await self.gate.wait()
        queue = self.scripts.get(model) or []
        if not queue:
            raise ProviderError("no script", status_code=500, model=model)
        result = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(result, BaseException):
            raise result
        return result

    async def complete(self, turns: list[ConversationTurn], *, model: str | None = None) -> str:
        result = await self._next("complete", turns, model)
        return result.text if isinstance(result, Completion) else result

    async def complete_with_tools(
        self,
        turns: list[ConversationTurn],
        tools: list[dict[str, Any]],
        *,
        model: str | None = None,
    ) -> Completion:
        result = await self._next("tools", turns, model)
        if isinstance(result, str):
            return Completion(text=result, model=model or "")
        return result


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        LLM_API_KEY="test-key",
        llm_base_url="https://llm.test/v1",
        model="primary",
        fallback_models=["backup"],
        workspace_dir=str(tmp_path),
        debounce_window=0.05,
        fragment_time_gap=0.05,
        tool_notifications=True,
    )


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()
