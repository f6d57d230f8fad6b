"""Tool registry for the agent loop.

Provides:
- ToolRegistry: registers tools, renders their definitions in the
  OpenAI function-calling format, and dispatches calls
- current_conversation: the conversation whose run is executing, for
  tools that need to reach the user (the approval gate)

Handlers return MCP-format responses: {"content": [{"type": "text", "text": "..."}]}.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextvars import ContextVar
from typing import Any

logger = logging.getLogger(__name__)

# Set by the agent loop for the duration of a run. Each run is its own
# asyncio task, so concurrent conversations never see each other's value.
current_conversation: ContextVar[str | None] = ContextVar("current_conversation", default=None)


def mcp_response(text: str) -> dict[str, Any]:
    """Build MCP-format response."""
    return {"content": [{"type": "text", "text": text}]}


# ---------------------------------------------------------------------------
# ToolRegistry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """Registers tool handlers and dispatches tool calls requested by the model.

    Each handler is an async callable that accepts **kwargs and returns
    an MCP-format response. The registry extracts the plain text for the
    tool-result turn.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Callable[..., Any]] = {}
        self._schemas: dict[str, dict[str, Any]] = {}

    def register(self, name: str, handler: Callable[..., Any], schema: dict[str, Any]) -> None:
        """Register a tool handler with its JSON schema.

        The schema's top-level "description" doubles as the tool description.
        """
        if name in self._handlers:
            logger.warning("Tool %s re-registered, replacing previous handler", name)
        self._handlers[name] = handler
        self._schemas[name] = schema

    def has(self, name: str) -> bool:
        return name in self._handlers

    def names(self) -> list[str]:
        return list(self._handlers)

    def describe(self) -> list[tuple[str, str]]:
        """(name, description) pairs in registration order."""
        return [(name, schema.get("description", "")) for name, schema in self._schemas.items()]

    def __len__(self) -> int:
        return len(self._handlers)

    async def dispatch(self, name: str, args: dict[str, Any]) -> tuple[str, bool]:
        """Dispatch a tool call and return (result_text, is_error).

        Tool failures never raise; cancellation of the run does.
        """
        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown tool: {name}", True
        try:
            result = await handler(**args)
            return result["content"][0]["text"], False
        except TypeError as e:
            logger.warning("Bad arguments for tool %s: %s", name, e)
            return f"Invalid arguments for {name}: {e}", True
        except Exception as e:
            logger.exception("Tool dispatch error for %s", name)
            return f"Tool error: {e}", True

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Return all tool definitions in OpenAI function-calling format."""
        definitions = []
        for name, schema in self._schemas.items():
            parameters = {k: v for k, v in schema.items() if k != "description"}
            definitions.append(
                {
                    "type": "function",
                    "function": {
                        "name": name,
                        "description": schema.get("description", ""),
                        "parameters": parameters,
                    },
                }
            )
        return definitions
