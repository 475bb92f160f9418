import asyncio

import pytest

from agent_relay.exceptions import ToolNotFoundError
from agent_relay.tools.registry import (
    TRUNCATION_MARKER,
    Tool,
    ToolInvocationResult,
    ToolRegistry,
    render_tool_output,
)


class EchoTool(Tool):
    name = "echo"
    description = "Echo a value"
    parameters = {
        "type": "object",
        "properties": {"value": {"type": "string"}},
        "required": ["value"],
    }

    async def execute(self, value: str, **kwargs):
        return {"value": value}


class SlowTool(Tool):
    name = "slow"
    description = "Slow"
    timeout_seconds = 0.05

    async def execute(self, **kwargs):
        await asyncio.sleep(2.0)
        return "done"


class CancellableTool(Tool):
    name = "cancellable"
    description = "Cancellable"
    timeout_seconds = 20.0

    def __init__(self):
        self.cancelled = False

    async def execute(self, **kwargs):
        try:
            await asyncio.sleep(10.0)
            return "done"
        except asyncio.CancelledError:
            self.cancelled = True
            raise


class OpaqueTool(Tool):
    name = "opaque"
    description = "Returns something JSON can't encode"

    async def execute(self, **kwargs):
        loop = {}
        loop["self"] = loop
        return loop


class StrictTool(Tool):
    name = "send_email"
    description = "Takes exactly one keyword"

    async def execute(self, email: str):
        return {"sent": email}


def test_invocation_result_error_is_reflected_in_output():
    result = ToolInvocationResult(tool_call_id="c1", error="command failed")

    assert not result.success
    assert result.output == {"error": "command failed"}


def test_invocation_result_keeps_explicit_error_output():
    result = ToolInvocationResult(error="bad", output={"error": "bad", "detail": "x"})

    assert result.output == {"error": "bad", "detail": "x"}


def test_render_tool_output_serializes_and_truncates():
    assert render_tool_output(ToolInvocationResult(output="plain"), 100) == "plain"
    assert render_tool_output(ToolInvocationResult(output={"a": [1, 2]}), 100) == '{"a": [1, 2]}'

    rendered = render_tool_output(ToolInvocationResult(output="z" * 20), 5)
    assert rendered == "zzzzz" + TRUNCATION_MARKER


def test_registry_lookup_and_definitions():
    registry = ToolRegistry()
    registry.register(EchoTool(), metadata={"source": "test"})

    assert registry.has_tool("echo")
    assert registry.list_tools() == ["echo"]
    assert registry.get_tool_metadata("echo") == {"source": "test"}
    assert registry.get_definitions() == [{
        "name": "echo",
        "description": "Echo a value",
        "parameters": EchoTool.parameters,
    }]
    with pytest.raises(ToolNotFoundError):
        registry.get("nope")

    registry.unregister("echo")
    assert not registry.has_tool("echo")


def test_register_requires_name():
    tool = EchoTool()
    tool.name = ""

    with pytest.raises(ValueError):
        ToolRegistry().register(tool)


@pytest.mark.asyncio
async def test_invoke_success_returns_output():
    registry = ToolRegistry()
    registry.register(EchoTool())

    result = await registry.invoke("echo", {"value": "hi"}, tool_call_id="c1")

    assert result.success
    assert result.tool_call_id == "c1"
    assert result.output == {"value": "hi"}


@pytest.mark.asyncio
async def test_invoke_never_raises_for_tool_faults():
    registry = ToolRegistry()
    registry.register(EchoTool())
    registry.register(OpaqueTool())

    missing = await registry.invoke("nope", {})
    bad_args = await registry.invoke("echo", {})
    opaque = await registry.invoke("opaque", {})

    assert missing.error == "Tool not found: nope"
    assert bad_args.error == "Tool 'echo' failed: Missing required argument: value"
    assert opaque.error == "Tool 'opaque' returned an invalid result payload"
    assert all(r.output == {"error": r.error} for r in (missing, bad_args, opaque))


@pytest.mark.asyncio
async def test_invoke_reports_wrong_keyword_arguments_as_tool_error():
    registry = ToolRegistry()
    registry.register(StrictTool())

    misspelled = await registry.invoke("send_email", {"emial": "x@y"}, tool_call_id="c1")
    missing = await registry.invoke("send_email", {}, tool_call_id="c2")

    assert not misspelled.success
    assert misspelled.tool_call_id == "c1"
    assert misspelled.error.startswith("Tool 'send_email' failed:")
    assert "emial" in misspelled.error
    assert misspelled.output == {"error": misspelled.error}
    assert not missing.success
    assert "email" in missing.error


@pytest.mark.asyncio
async def test_invoke_times_out_slow_tool():
    registry = ToolRegistry()
    registry.register(SlowTool())

    result = await registry.invoke("slow", {})

    assert result.error == "Tool 'slow' failed: Execution timed out after 0.05s"


@pytest.mark.asyncio
async def test_caller_timeout_caps_tool_timeout():
    registry = ToolRegistry(default_timeout_seconds=60)
    tool = CancellableTool()
    registry.register(tool)

    result = await registry.invoke("cancellable", {}, timeout=0.05)

    assert not result.success
    assert "timed out" in result.error
    assert tool.cancelled


@pytest.mark.asyncio
async def test_cancelling_invoke_cancels_running_tool():
    registry = ToolRegistry()
    tool = CancellableTool()
    registry.register(tool)

    task = asyncio.create_task(registry.invoke("cancellable", {}))
    await asyncio.sleep(0.05)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert tool.cancelled


def test_display_flag_is_exposed():
    class Panel(EchoTool):
        name = "panel"
        display = True

    registry = ToolRegistry()
    registry.register(EchoTool())
    registry.register(Panel())

    assert registry.is_display_tool("panel")
    assert not registry.is_display_tool("echo")
    assert not registry.is_display_tool("unknown")
