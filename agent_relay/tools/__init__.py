"""Tool registry and plugin loading."""

from agent_relay.tools.plugins import load_tool_plugin, load_tool_plugins
from agent_relay.tools.registry import (
    TRUNCATION_MARKER,
    Tool,
    ToolInvocationResult,
    ToolRegistry,
    render_tool_output,
)

__all__ = [
    "TRUNCATION_MARKER",
    "Tool",
    "ToolInvocationResult",
    "ToolRegistry",
    "load_tool_plugin",
    "load_tool_plugins",
    "render_tool_output",
]
