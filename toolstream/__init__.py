"""Toolstream - streaming tool-calling agent loop for LLM backends."""

__version__ = "0.1.0"

from toolstream.agent_loop import AgentLoopConfig, AgentLoopExecutor
from toolstream.config import Config
from toolstream.context_compressor import ContextCompressor
from toolstream.streams import ChatCompletionsStreamProcessor, ResponsesAPIStreamProcessor
from toolstream.tool_text_adapter import TextToolCallStreamProcessor, ToolCallTextAdapter

__all__ = [
    "AgentLoopConfig",
    "AgentLoopExecutor",
    "ChatCompletionsStreamProcessor",
    "Config",
    "ContextCompressor",
    "ResponsesAPIStreamProcessor",
    "TextToolCallStreamProcessor",
    "ToolCallTextAdapter",
    "__version__",
]
