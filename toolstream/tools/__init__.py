"""Tools package for toolstream."""

from toolstream.tools.registry import FunctionTool, Tool, ToolRegistry
from toolstream.tools.searx_search import SearxSearchTool

__all__ = [
    "FunctionTool",
    "Tool",
    "ToolRegistry",
    "SearxSearchTool",
    "build_default_registry",
]

_BUILTIN_TOOLS = {
    "search_searx": SearxSearchTool,
}


def build_default_registry(enabled: list[str] | None = None) -> ToolRegistry:
    """Build a registry holding the enabled built-in tools."""
    if enabled is None:
        from toolstream.config import get_config
        enabled = get_config().tools.enabled
    registry = ToolRegistry()
    for name in enabled:
        tool_cls = _BUILTIN_TOOLS.get(name)
        if tool_cls is not None:
            registry.register(tool_cls())
    return registry
