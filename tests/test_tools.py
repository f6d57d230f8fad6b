"""Unit tests for parley/api/tools.py -- ToolRegistry.

Verifies registration, dispatch, unknown tool handling, error
conversion and the OpenAI function-calling definitions.
"""

import pytest

from parley.api.tools import ToolRegistry, mcp_response


async def _echo(text: str) -> dict:
    return mcp_response(f"echo: {text}")


async def _boom() -> dict:
    raise RuntimeError("disk on fire")


_ECHO_SCHEMA = {
    "type": "object",
    "description": "Echo the input back",
    "properties": {"text": {"type": "string"}},
    "required": ["text"],
}


@pytest.fixture
def registry() -> ToolRegistry:
    reg = ToolRegistry()
    reg.register("echo", _echo, _ECHO_SCHEMA)
    reg.register("boom", _boom, {"type": "object", "description": "Always fails", "properties": {}})
    return reg


class TestDispatch:
    """dispatch() returns (text, is_error) and never raises for tool failures."""

    @pytest.mark.asyncio
    async def test_success(self, registry):
        assert await registry.dispatch("echo", {"text": "hi"}) == ("echo: hi", False)

    @pytest.mark.asyncio
    async def test_unknown_tool(self, registry):
        text, is_error = await registry.dispatch("nope", {})
        assert is_error
        assert text == "Unknown tool: nope"

    @pytest.mark.asyncio
    async def test_handler_exception(self, registry):
        text, is_error = await registry.dispatch("boom", {})
        assert is_error
        assert "disk on fire" in text

    @pytest.mark.asyncio
    async def test_bad_arguments(self, registry):
        text, is_error = await registry.dispatch("echo", {"wrong": 1})
        assert is_error
        assert text.startswith("Invalid arguments for echo")


class TestDefinitions:
    def test_openai_function_format(self, registry):
        definitions = registry.tool_definitions()

        assert [d["function"]["name"] for d in definitions] == ["echo", "boom"]
        echo = definitions[0]
        assert echo["type"] == "function"
        assert echo["function"]["description"] == "Echo the input back"
        assert "description" not in echo["function"]["parameters"]
        assert echo["function"]["parameters"]["required"] == ["text"]

    def test_describe_and_lookup(self, registry):
        assert registry.describe() == [("echo", "Echo the input back"), ("boom", "Always fails")]
        assert registry.has("echo")
        assert not registry.has("bash")
        assert len(registry) == 2

    def test_reregister_replaces(self, registry):
        registry.register("echo", _boom, {"description": "replaced"})
        assert len(registry) == 2
        assert registry.describe()[0] == ("echo", "replaced")
