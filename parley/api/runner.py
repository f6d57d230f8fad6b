"""Agent runner -- the tool-calling loop for one unit of work.

Drives the failover-wrapped provider: each iteration either returns a
plain-text answer or requests tool calls, which are dispatched through
the ToolRegistry and fed back as tool-result turns. When the structured
tool channel fails outright, falls back to a plain completion and scans
its text for one embedded {"tool": ..., "args": ...} invocation.
"""

from __future__ import annotations

import json
import logging
import platform
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from parley.api.tools import ToolRegistry, current_conversation
from parley.config import Settings
from parley.llm.failover import FailoverProvider
from parley.llm.provider import ProviderError
from parley.schemas import (
    AgentResult,
    ConversationTurn,
    Role,
    ToolCall,
    ToolResult,
    Usage,
)

logger = logging.getLogger(__name__)

COMPLETION_NOTICE = "I've completed the requested actions."

Notify = Callable[[str], Awaitable[Any]]


def parse_embedded_tool_call(text: str) -> tuple[str, dict[str, Any]] | None:
    """Find a {"tool": name, "args": {...}} object in free text.

    Takes the span from the first "{" to the last "}"; anything that is
    not valid JSON of that shape yields None.
    """
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        data = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    name = data.get("tool")
    args = data.get("args") or {}
    if not isinstance(name, str) or not name or not isinstance(args, dict):
        return None
    return name, args


class AgentRunner:
    """Runs the bounded tool-use loop for a conversation."""

    def __init__(
        self,
        provider: FailoverProvider,
        registry: ToolRegistry,
        settings: Settings,
    ) -> None:
        self._provider = provider
        self._registry = registry
        self._settings = settings

    async def run(
        self,
        conversation_id: str,
        unit: str,
        prior_session_text: str = "",
        notify: Notify | None = None,
    ) -> AgentResult:
        """Process one unit of work and return the final answer.

        Raises ProviderError when the provider chain fails and the legacy
        fallback cannot recover. Cancellation propagates as CancelledError.
        """
        token = current_conversation.set(conversation_id)
        try:
            return await self._run(conversation_id, unit, prior_session_text, notify)
        finally:
            current_conversation.reset(token)

    async def _run(
        self,
        conversation_id: str,
        unit: str,
        prior_session_text: str,
        notify: Notify | None,
    ) -> AgentResult:
        turns = self._initial_turns(unit, prior_session_text)
        tools = self._registry.tool_definitions()
        max_iterations = self._settings.max_iterations

        usage = Usage()
        tools_used: list[str] = []
        tool_results: list[ToolResult] = []
        model_used: str | None = None

        for iteration in range(1, max_iterations + 1):
            logger.debug("Agent %s: iteration %d/%d", conversation_id, iteration, max_iterations)
            try:
                completion, model_used = await self._provider.complete_with_failover(
                    turns,
                    self._settings.model,
                    self._settings.fallback_models,
                    tools=tools,
                )
            except ProviderError as e:
                logger.warning(
                    "Tool-calling request failed for %s (%s), falling back to text mode",
                    conversation_id,
                    e,
                )
                return await self._legacy_run(turns, notify)

            usage.add(completion.usage)

            if not completion.tool_calls:
                return AgentResult(
                    final_text=completion.text or COMPLETION_NOTICE,
                    tools_used=tools_used,
                    tool_results=tool_results,
                    usage=usage,
                    model=model_used,
                    iterations=iteration,
                )

            for call in completion.tool_calls:
                await self._notify_tool(call.name, notify)
                result = await self._execute(call)
                turns.append(ConversationTurn(role=Role.ASSISTANT, tool_calls=[call]))
                turns.append(
                    ConversationTurn(
                        role=Role.TOOL,
                        content=result.result if result.error is None else result.error,
                        tool_call_id=call.id,
                        name=call.name,
                    )
                )
                tools_used.append(call.name)
                tool_results.append(result)

        logger.warning(
            "Agent %s reached max_iterations=%d without a text answer",
            conversation_id,
            max_iterations,
        )
        return AgentResult(
            final_text=COMPLETION_NOTICE,
            tools_used=tools_used,
            tool_results=tool_results,
            usage=usage,
            model=model_used,
            iterations=max_iterations,
            hit_iteration_cap=True,
        )

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------

    async def _execute(self, call: ToolCall) -> ToolResult:
        """Run one requested tool; failures become an error ToolResult."""
        try:
            args = json.loads(call.arguments or "{}")
        except json.JSONDecodeError as e:
            return ToolResult(
                tool_name=call.name,
                error=f"Error executing tool: failed to parse arguments: {e}",
            )
        if not isinstance(args, dict):
            return ToolResult(
                tool_name=call.name,
                error="Error executing tool: arguments must be a JSON object",
            )

        start_time = time.monotonic()
        text, is_error = await self._registry.dispatch(call.name, args)
        duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.debug("Tool %s finished in %dms (error=%s)", call.name, duration_ms, is_error)

        return ToolResult(
            tool_name=call.name,
            arguments=args,
            result=text if not is_error else None,
            error=f"Error executing tool: {text}" if is_error else None,
            duration_ms=duration_ms,
        )

    async def _notify_tool(self, tool_name: str, notify: Notify | None) -> None:
        if notify is None or not self._settings.tool_notifications:
            return
        try:
            await notify(f"🔧 Using {tool_name} tool...")
        except Exception as e:
            logger.warning("Tool notification failed: %s", e)

    # ------------------------------------------------------------------
    # Legacy text-mode fallback
    # ------------------------------------------------------------------

    async def _legacy_run(
        self, turns: list[ConversationTurn], notify: Notify | None
    ) -> AgentResult:
        """Plain completion, then at most one embedded tool invocation."""
        plain = [t for t in turns if not t.tool_calls and t.role is not Role.TOOL]
        completion, model_used = await self._provider.complete_with_failover(
            plain, self._settings.model, self._settings.fallback_models
        )
        text = completion.text

        parsed = parse_embedded_tool_call(text)
        if parsed is None or not self._registry.has(parsed[0]):
            return AgentResult(final_text=text, model=model_used, iterations=1)

        tool_name, args = parsed
        await self._notify_tool(tool_name, notify)
        result = await self._execute(
            ToolCall(id="legacy", name=tool_name, arguments=json.dumps(args))
        )

        if result.error is not None:
            return AgentResult(
                final_text=f"❌ Tool execution failed: {result.error}",
                tools_used=[tool_name],
                tool_results=[result],
                model=model_used,
                iterations=1,
            )

        follow_up = [
            *plain,
            ConversationTurn(
                role=Role.ASSISTANT,
                content=f"I'll help you with that. Let me use the {tool_name} tool.",
            ),
            ConversationTurn(
                role=Role.SYSTEM,
                content=f"Tool {tool_name} returned: {result.result}",
            ),
        ]
        try:
            final, model_used = await self._provider.complete_with_failover(
                follow_up, self._settings.model, self._settings.fallback_models
            )
            final_text = final.text
        except ProviderError as e:
            logger.warning("Follow-up completion failed, returning raw tool output: %s", e)
            final_text = result.result or ""

        return AgentResult(
            final_text=final_text,
            tools_used=[tool_name],
            tool_results=[result],
            model=model_used,
            iterations=2,
        )

    # ------------------------------------------------------------------
    # Prompt construction
    # ------------------------------------------------------------------

    def _initial_turns(self, unit: str, prior_session_text: str) -> list[ConversationTurn]:
        turns = [ConversationTurn(role=Role.SYSTEM, content=self.build_system_prompt())]
        if prior_session_text:
            turns.append(ConversationTurn(role=Role.ASSISTANT, content=prior_session_text))
        turns.append(ConversationTurn(role=Role.USER, content=unit))
        return turns

    def build_system_prompt(self) -> str:
        """Base instructions, the available tools, and runtime info."""
        parts = [self._settings.system_prompt]

        described = self._registry.describe()
        if described:
            lines = ["You have access to the following tools:", ""]
            for name, description in described:
                lines.append(f"Tool: {name}")
                lines.append(f"Description: {description}")
                lines.append("")
            lines.append(
                "Use the native function calling capability when you need a tool. "
                "The system executes tools and returns their results to you."
            )
            parts.append("\n".join(lines))

        today = datetime.now(UTC).strftime("%Y-%m-%d")
        parts.append(f"Runtime: os={platform.system().lower()} date={today}")
        return "\n\n".join(parts)
