"""Unit tests for parley/api/builtin_tools.py -- the bash tool.

Each test runs in a tmp_path workspace. Commands run
through sys.executable so they behave the same on every platform.
"""

import asyncio
import sys

import pytest

from parley.api.builtin_tools import (
    COMMAND_DENIED,
    bash_tool,
    register_builtin_tools,
)
from parley.api.tools import ToolRegistry, current_conversation
from parley.approval import ApprovalGate


def _extract_text(result: dict) -> str:
    """Extract text from MCP-format response."""
    return result["content"][0]["text"]


def _py(code: str) -> str:
    return f'{sys.executable} -c "{code}"'


# ---------------------------------------------------------------------------
# bash_tool
# ---------------------------------------------------------------------------


class TestBashTool:
    """Shell execution."""

    @pytest.mark.asyncio
    async def test_stdout_captured(self, tmp_path):
        result = await bash_tool(_py("print('hello')"), _workspace_dir=str(tmp_path))
        assert "hello" in _extract_text(result)

    @pytest.mark.asyncio
    async def test_stderr_and_exit_code(self, tmp_path):
        result = await bash_tool(
            _py("import sys; sys.stderr.write('warn\\n'); sys.exit(3)"),
            _workspace_dir=str(tmp_path),
        )
        text = _extract_text(result)
        assert "STDERR:\nwarn" in text
        assert "Exit code: 3" in text

    @pytest.mark.asyncio
    async def test_timeout_kills_command(self, tmp_path):
        result = await bash_tool(
            _py("import time; time.sleep(30)"), timeout=1, _workspace_dir=str(tmp_path)
        )
        assert "timed out after 1s" in _extract_text(result)

    @pytest.mark.asyncio
    async def test_runs_in_workspace(self, tmp_path):
        workspace = tmp_path / "ws"
        result = await bash_tool(
            _py("import os; print(os.getcwd())"), _workspace_dir=str(workspace)
        )
        assert workspace.exists()
        assert str(workspace.resolve()) in _extract_text(result)

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, tmp_path):
        task = asyncio.create_task(
            bash_tool(_py("import time; time.sleep(30)"), timeout=60, _workspace_dir=str(tmp_path))
        )
        await asyncio.sleep(0.3)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await asyncio.wait_for(task, 5)


class TestBashApproval:
    """Destructive commands go through the approval gate."""

    @pytest.mark.asyncio
    async def test_safe_command_runs_without_prompt(self, tmp_path, transport):
        gate = ApprovalGate(transport, timeout=5)
        token = current_conversation.set("c1")
        try:
            result = await bash_tool(_py("print(1)"), _workspace_dir=str(tmp_path), _approval=gate)
        finally:
            current_conversation.reset(token)
        assert "1" in _extract_text(result)
        assert transport.prompts == []

    @pytest.mark.asyncio
    async def test_denied_command_does_not_run(self, tmp_path, transport):
        gate = ApprovalGate(transport, timeout=5)
        marker = tmp_path / "marker"
        marker.write_text("keep")

        async def run():
            current_conversation.set("c1")
            return await bash_tool(f"rm -f {marker}", _workspace_dir=str(tmp_path), _approval=gate)

        task = asyncio.create_task(run())
        while not transport.prompts:
            await asyncio.sleep(0)
        conversation_id, request_id, command = transport.prompts[0]
        assert conversation_id == "c1"
        gate.handle_decision(request_id, False)

        assert _extract_text(await task).startswith(COMMAND_DENIED)
        assert marker.exists()

    @pytest.mark.asyncio
    async def test_approved_command_runs(self, tmp_path, transport):
        gate = ApprovalGate(transport, timeout=5)
        marker = tmp_path / "marker"
        marker.write_text("gone soon")

        async def run():
            current_conversation.set("c1")
            return await bash_tool(f"rm -f {marker}", _workspace_dir=str(tmp_path), _approval=gate)

        task = asyncio.create_task(run())
        while not transport.prompts:
            await asyncio.sleep(0)
        gate.handle_decision(transport.prompts[0][1], True)

        await task
        assert not marker.exists()

    @pytest.mark.asyncio
    async def test_dangerous_command_outside_run_is_denied(self, tmp_path, transport):
        gate = ApprovalGate(transport, timeout=5)
        result = await bash_tool("rm -rf stuff", _workspace_dir=str(tmp_path), _approval=gate)
        assert _extract_text(result).startswith(COMMAND_DENIED)
        assert transport.prompts == []


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegistration:
    @pytest.mark.asyncio
    async def test_registers_bash_only(self, settings, transport):
        registry = ToolRegistry()
        register_builtin_tools(registry, settings, ApprovalGate(transport))

        assert registry.names() == ["bash"]
        text, is_error = await registry.dispatch("bash", {"command": _py("print('hi')")})
        assert (text.strip(), is_error) == ("hi", False)
