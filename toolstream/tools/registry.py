"""Tool registry and base tool class."""

import asyncio
import inspect
from abc import ABC, abstractmethod
from typing import Any, Callable

from toolstream.exceptions import ToolExecutionError, ToolNotFoundError
from toolstream.logging import get_logger

log = get_logger(__name__)


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}

    @abstractmethod
    async def execute(self, **kwargs: Any) -> Any:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments

        Returns:
            Any JSON-serializable value
        """
        pass

    def get_definition(self) -> dict[str, Any]:
        """Get the Chat Completions tool schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def get_responses_definition(self) -> dict[str, Any]:
        """Get the Responses API tool schema (function fields at root level)."""
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Check that required arguments are present.

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


class FunctionTool(Tool):
    """Adapt a plain sync or async callable taking one ``args`` dict.

    Sync callables run in a worker thread so they cannot stall the event loop;
    a timed-out sync call is abandoned, not interrupted.
    """

    def __init__(
        self,
        name: str,
        fn: Callable[[dict[str, Any]], Any],
        description: str = "",
        parameters: dict[str, Any] | None = None,
    ):
        self.name = name
        self.fn = fn
        self.description = description
        self.parameters = parameters or {"type": "object", "properties": {}}

    async def execute(self, **kwargs: Any) -> Any:
        if inspect.iscoroutinefunction(self.fn):
            return await self.fn(kwargs)
        result = await asyncio.to_thread(self.fn, kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result


class ToolRegistry:
    """Registry for managing available tools.

    Read-only from the agent loop's side, so one registry may serve many
    concurrent requests.
    """

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def register_function(
        self,
        name: str,
        fn: Callable[[dict[str, Any]], Any],
        description: str = "",
        parameters: dict[str, Any] | None = None,
    ) -> FunctionTool:
        """Register a callable as a tool and return the wrapper."""
        tool = FunctionTool(name, fn, description=description, parameters=parameters)
        self.register(tool)
        return tool

    def unregister(self, name: str) -> None:
        """Unregister a tool.

        Args:
            name: Tool name to unregister
        """
        self._tools.pop(name, None)

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools)

    def get_definitions(self) -> list[dict[str, Any]]:
        """Get all Chat Completions tool schemas."""
        return [tool.get_definition() for tool in self._tools.values()]

    def get_responses_definitions(self) -> list[dict[str, Any]]:
        """Get all Responses API tool schemas."""
        return [tool.get_responses_definition() for tool in self._tools.values()]
