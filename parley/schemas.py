"""Pydantic DTOs shared by the provider client, the agent loop and the orchestrator.

ConversationTurn mirrors the OpenAI-compatible chat message shape so the
client can serialize turns without a translation layer.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class QueueMode(StrEnum):
    """How a message arriving during an active run is treated."""

    COLLECT = "collect"
    STEER = "steer"
    INTERRUPT = "interrupt"


class ToolCall(BaseModel):
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: str = "{}"  # raw JSON string, parsed by the agent loop

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


class ConversationTurn(BaseModel):
    """One message in the turn sequence sent to the provider."""

    role: Role
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_call_id: str | None = None
    name: str | None = None  # tool name on tool-result turns

    def to_wire(self) -> dict[str, Any]:
        message: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [tc.to_wire() for tc in self.tool_calls]
        if self.tool_call_id:
            message["tool_call_id"] = self.tool_call_id
        if self.name:
            message["name"] = self.name
        return message


class Usage(BaseModel):
    """Token accounting for one or more provider calls."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: Usage | None) -> None:
        """Accumulate a later call's usage.

        Prompt and total tokens track the latest call (each prompt already
        contains the whole conversation); completion tokens are summed.
        """
        if other is None:
            return
        self.prompt_tokens = other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.total_tokens = other.total_tokens

    def as_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


class Completion(BaseModel):
    """Result of a completeWithTools call."""

    text: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    usage: Usage | None = None
    finish_reason: str = ""
    model: str = ""


class ToolResult(BaseModel):
    """Record of one tool execution during a run."""

    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    result: str | None = None
    error: str | None = None
    duration_ms: int | None = None


class AgentResult(BaseModel):
    """Outcome of one agent run."""

    final_text: str
    tools_used: list[str] = Field(default_factory=list)
    tool_results: list[ToolResult] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    model: str | None = None
    iterations: int = 0
    hit_iteration_cap: bool = False


class InboundMessage(BaseModel):
    """A transport message entering the pipeline."""

    conversation_id: str
    author_id: str
    sequence_number: int
    text: str
