"""Tool registry and base tool class."""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, model_validator

from agent_relay.exceptions import ToolExecutionError, ToolNotFoundError
from agent_relay.logging import get_logger

log = get_logger(__name__)

TRUNCATION_MARKER = "\n\n[Content truncated due to size limits.]"


class ToolInvocationResult(BaseModel):
    """Result of one tool invocation. Failures are data, not exceptions."""

    tool_call_id: str = ""
    output: Any = None
    error: str | None = None

    @model_validator(mode="after")
    def _encode_error_in_output(self) -> "ToolInvocationResult":
        """Failed results always carry ``{"error": ...}`` as their output."""
        if self.error is not None:
            self.error = self.error.strip() or "Tool execution failed"
            if not isinstance(self.output, dict) or "error" not in self.output:
                self.output = {"error": self.error}
        return self

    @property
    def success(self) -> bool:
        return self.error is None


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {"type": "object", "properties": {}}
    timeout_seconds: float | None = None
    # Results of display tools are also surfaced to the client side channel
    display: bool = False

    @abstractmethod
    async def execute(self, **kwargs: Any) -> Any:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments

        Returns:
            JSON-serializable output for the model
        """
        pass

    def get_definition(self) -> dict[str, Any]:
        """Get the tool definition for the LLM.

        Returns:
            Function-style definition (name, description, parameters schema)
        """
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Validate required arguments against the schema.

        Raises:
            ToolExecutionError if a required argument is missing
        """
        required = self.parameters.get("required", [])
        for field in required:
            if field not in arguments:
                raise ToolExecutionError(
                    self.name,
                    f"Missing required argument: {field}",
                )


def render_tool_output(result: ToolInvocationResult, max_chars: int) -> str:
    """Serialize a result for the model, truncating oversized payloads."""
    output = result.output
    text = output if isinstance(output, str) else json.dumps(output, ensure_ascii=False, default=str)
    if len(text) > max_chars:
        log.info(
            "Tool result is large, truncating",
            tool_call_id=result.tool_call_id,
            chars=len(text),
            limit=max_chars,
        )
        text = text[:max_chars] + TRUNCATION_MARKER
    return text


class ToolRegistry:
    """Registry for managing available tools.

    Shared by concurrent requests: after registration it is only read.
    """

    def __init__(self, default_timeout_seconds: float | None = None):
        self._tools: dict[str, Tool] = {}
        self._tool_metadata: dict[str, dict[str, Any]] = {}
        self._default_timeout_seconds = default_timeout_seconds

    def register(self, tool: Tool, metadata: dict[str, Any] | None = None) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
            metadata: Optional descriptive metadata (e.g. plugin source)
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool
        if isinstance(metadata, dict):
            self._tool_metadata[tool.name] = dict(metadata)
        elif tool.name not in self._tool_metadata:
            self._tool_metadata[tool.name] = {}

    def unregister(self, name: str) -> None:
        """Unregister a tool."""
        self._tools.pop(name, None)
        self._tool_metadata.pop(name, None)

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get_tool_metadata(self, name: str) -> dict[str, Any]:
        """Return metadata associated with a registered tool."""
        return dict(self._tool_metadata.get(name, {}))

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def is_display_tool(self, name: str) -> bool:
        tool = self._tools.get(name)
        return bool(tool is not None and tool.display)

    def list_tools(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools)

    def get_definitions(self) -> list[dict[str, Any]]:
        """Get all tool definitions for the LLM."""
        return [tool.get_definition() for tool in self._tools.values()]

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("Cancelled tool task raised", error=str(e))

    async def _execute(self, tool: Tool, arguments: dict[str, Any], timeout: float | None) -> Any:
        """Run a tool with a timeout; raise ``ToolExecutionError`` on failure."""
        tool.validate_arguments(arguments)

        timeout_seconds = float(tool.timeout_seconds or self._default_timeout_seconds or 30.0)
        if timeout is not None:
            timeout_seconds = min(timeout_seconds, timeout)
        timeout_seconds = max(0.001, timeout_seconds)

        execute_task: asyncio.Task[Any] | None = None
        try:
            # Unknown or missing keywords raise TypeError here, at call time
            execute_task = asyncio.create_task(tool.execute(**arguments))
            done, _ = await asyncio.wait({execute_task}, timeout=timeout_seconds)
            if execute_task in done:
                return execute_task.result()

            await self._cancel_task(execute_task)
            timeout_label = int(timeout_seconds) if float(timeout_seconds).is_integer() else round(timeout_seconds, 3)
            raise ToolExecutionError(tool.name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            await self._cancel_task(execute_task)
            raise
        except ToolExecutionError:
            raise
        except Exception as e:
            raise ToolExecutionError(tool.name, str(e) or type(e).__name__) from e

    async def invoke(
        self,
        name: str,
        arguments: dict[str, Any],
        tool_call_id: str = "",
        timeout: float | None = None,
    ) -> ToolInvocationResult:
        """Execute a tool by name. Never raises for tool failures.

        Args:
            name: Tool name
            arguments: Parsed JSON object arguments
            tool_call_id: Id of the model's tool call, echoed in the result
            timeout: Upper bound in seconds (e.g. the request's remaining budget)

        Returns:
            ToolInvocationResult; failures carry ``error`` and ``{"error": ...}`` output
        """
        try:
            tool = self.get(name)
        except ToolNotFoundError as e:
            log.warning("Unknown tool requested", tool=name, call_id=tool_call_id)
            return ToolInvocationResult(tool_call_id=tool_call_id, error=str(e))

        log.info("Executing tool", tool=name, call_id=tool_call_id, args=arguments)
        try:
            output = await self._execute(tool, arguments, timeout)
        except ToolExecutionError as e:
            log.error("Tool execution failed", tool=name, call_id=tool_call_id, error=str(e))
            return ToolInvocationResult(tool_call_id=tool_call_id, error=str(e))

        try:
            json.dumps(output, default=str)
        except (TypeError, ValueError) as e:
            log.error("Tool returned invalid result payload", tool=name, error=str(e))
            return ToolInvocationResult(
                tool_call_id=tool_call_id,
                error=f"Tool '{name}' returned an invalid result payload",
            )

        log.info("Tool executed", tool=name, call_id=tool_call_id)
        return ToolInvocationResult(tool_call_id=tool_call_id, output=output)
