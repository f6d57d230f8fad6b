"""Built-in tools for the assistant: bash.

bash is the command-execution tool: destructive commands are held at
the approval gate until the user approves them. It returns an
MCP-format response for consistent handling by ToolRegistry.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from parley.api.tools import ToolRegistry, current_conversation, mcp_response
from parley.approval import ApprovalGate
from parley.config import Settings

logger = logging.getLogger(__name__)

# Limits
_MAX_BASH_TIMEOUT = 300  # seconds
_MAX_OUTPUT_CHARS = 100 * 1024  # 100KB

COMMAND_DENIED = "Command denied by user"


def _truncate(text: str, label: str) -> str:
    if len(text) > _MAX_OUTPUT_CHARS:
        return text[:_MAX_OUTPUT_CHARS] + f"\n... [{label} truncated at 100KB]"
    return text


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def bash_tool(
    command: str,
    timeout: int = 30,
    *,
    _workspace_dir: str = "/tmp/parley-workspace",
    _approval: ApprovalGate | None = None,
) -> dict[str, Any]:
    """Execute a shell command in the workspace directory.

    Args:
        command: Shell command to execute
        timeout: Timeout in seconds (default 30, max 300)
        _workspace_dir: Internal param set by registration closure
        _approval: Gate consulted for destructive commands

    Returns:
        MCP-format response with stdout + stderr

    Cancelling the calling task kills the subprocess.
    """
    if _approval is not None and _approval.is_dangerous(command):
        conversation_id = current_conversation.get()
        if conversation_id is None:
            logger.warning("Dangerous command outside a run, denying: %s", command)
            return mcp_response(f"{COMMAND_DENIED}: {command}")
        if not await _approval.wait_for_approval(conversation_id, command):
            return mcp_response(f"{COMMAND_DENIED}: {command}")

    try:
        effective_timeout = max(1, min(timeout, _MAX_BASH_TIMEOUT))

        workspace = Path(_workspace_dir)
        workspace.mkdir(parents=True, exist_ok=True)

        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(workspace),
        )

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=effective_timeout
            )
        except TimeoutError:
            proc.kill()
            await proc.wait()
            return mcp_response(
                f"Command timed out after {effective_timeout}s.\n"
                f"Command: {command}"
            )
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            raise

        stdout_text = _truncate(stdout.decode("utf-8", errors="replace"), "output")
        stderr_text = _truncate(stderr.decode("utf-8", errors="replace"), "stderr")

        parts = []
        if stdout_text:
            parts.append(stdout_text)
        if stderr_text:
            parts.append(f"STDERR:\n{stderr_text}")
        if proc.returncode != 0:
            parts.append(f"Exit code: {proc.returncode}")

        output = "\n".join(parts) if parts else "(no output)"
        return mcp_response(output)

    except Exception as e:
        logger.exception("bash_tool error")
        return mcp_response(f"Error executing command: {e}")


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

_BASH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": (
        "Execute a shell command in the workspace directory. "
        "Destructive commands require the user's approval."
    ),
    "properties": {
        "command": {"type": "string", "description": "Shell command to execute"},
        "timeout": {
            "type": "integer",
            "description": "Timeout in seconds (default 30, max 300)",
            "default": 30,
            "minimum": 1,
            "maximum": 300,
        },
    },
    "required": ["command"],
}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_builtin_tools(
    registry: ToolRegistry,
    settings: Settings,
    approval: ApprovalGate | None = None,
) -> None:
    """Register the built-in bash tool with the registry.

    The closure injects workspace_dir and the approval gate.
    """
    workspace = settings.workspace_dir
    default_timeout = settings.bash_timeout

    async def _bash(command: str, timeout: int = default_timeout) -> dict[str, Any]:
        return await bash_tool(command, timeout, _workspace_dir=workspace, _approval=approval)

    registry.register("bash", _bash, _BASH_SCHEMA)
