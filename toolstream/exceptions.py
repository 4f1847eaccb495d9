"""Custom exceptions for toolstream."""


class ToolstreamError(Exception):
    """Base exception for toolstream."""

    pass


class ConfigurationError(ToolstreamError):
    """Configuration-related errors."""

    pass


class LLMError(ToolstreamError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ToolError(ToolstreamError):
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
        super().__init__(f"Function {tool_name} not found")
        self.tool_name = tool_name


class ToolTimeoutError(ToolError):
    """Tool did not settle before the configured timeout."""

    def __init__(self, tool_name: str, timeout_seconds: float):
        super().__init__("Tool execution timeout")
        self.tool_name = tool_name
        self.timeout_seconds = timeout_seconds


class ContextError(ToolstreamError):
    """Context window errors."""

    pass


class CompressionError(ContextError):
    """History compression could not produce a summary."""

    pass
