"""Backend stream processors."""

from toolstream.streams.base import (
    ByteReader,
    ExtractedToolCall,
    OutputSink,
    StreamProcessingResult,
    StreamProcessor,
    ToolExecutionResult,
)
from toolstream.streams.channel import StreamChannel, read_all
from toolstream.streams.chat_completions import ChatCompletionsStreamProcessor, delta_chunk
from toolstream.streams.responses import ResponsesAPIStreamProcessor

__all__ = [
    "ByteReader",
    "ExtractedToolCall",
    "OutputSink",
    "StreamProcessingResult",
    "StreamProcessor",
    "ToolExecutionResult",
    "StreamChannel",
    "read_all",
    "ChatCompletionsStreamProcessor",
    "ResponsesAPIStreamProcessor",
    "delta_chunk",
]
