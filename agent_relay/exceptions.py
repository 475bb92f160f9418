"""Custom exceptions for Agent Relay."""


class AgentRelayError(Exception):
    """Base exception for Agent Relay."""

    pass


class ConfigurationError(AgentRelayError):
    """Configuration-related errors."""

    pass


class LLMError(AgentRelayError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """Upstream transport errors (unreachable, non-success status)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamError(LLMError):
    """Error event reported by the provider inside the stream."""

    def __init__(self, message: str, error_type: str = ""):
        super().__init__(message)
        self.error_type = error_type


class StreamTerminatedError(LLMError):
    """Upstream stream ended without a terminal marker."""

    pass


class RequestTimeoutError(AgentRelayError):
    """The request wall-clock budget ran out."""

    def __init__(self, budget_seconds: float):
        super().__init__(f"Request exceeded its {budget_seconds:g}s time budget")
        self.budget_seconds = budget_seconds


class ToolError(AgentRelayError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ToolPluginError(ToolError):
    """A configured tool plugin could not be loaded."""

    def __init__(self, spec: str, message: str):
        super().__init__(f"Tool plugin '{spec}' failed to load: {message}")
        self.spec = spec


class ConversationError(AgentRelayError):
    """Conversation history would break tool use/result pairing."""

    pass
