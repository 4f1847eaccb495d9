"""Shared types for backend stream processors."""

import codecs
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Callable, Protocol

ByteReader = AsyncIterable[bytes]


@dataclass
class ExtractedToolCall:
    """A tool call assembled from stream fragments."""

    id: str
    name: str
    arguments: str = ""  # JSON text, concatenated in arrival order


@dataclass
class StreamProcessingResult:
    """Outcome of one stream-processing pass."""

    tool_calls: list[ExtractedToolCall] = field(default_factory=list)
    has_assistant_content: bool = False
    raw_content: str = ""


@dataclass
class ToolExecutionResult:
    """Result of executing one tool call."""

    tool_call_id: str
    tool_name: str
    arguments: str
    result: Any
    execution_time_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_call_id": self.tool_call_id,
            "tool_name": self.tool_name,
            "arguments": self.arguments,
            "result": self.result,
            "execution_time_ms": self.execution_time_ms,
        }


class OutputSink(Protocol):
    """Anything that accepts passthrough chunks for the end user."""

    async def send(self, chunk: bytes) -> None: ...


def utf8_decoder() -> codecs.IncrementalDecoder:
    """Incremental decoder that keeps split multi-byte characters intact."""
    return codecs.getincrementaldecoder("utf-8")(errors="replace")


def complete_calls(calls: list[ExtractedToolCall]) -> list[ExtractedToolCall]:
    """Drop partial or abandoned call slots (missing id or name)."""
    return [call for call in calls if call.name and call.id]


class StreamProcessor(ABC):
    """Parse one backend wire format while passing bytes through live."""

    @abstractmethod
    async def process_stream(self, reader: ByteReader, sink: OutputSink) -> StreamProcessingResult:
        """Read ``reader`` to exhaustion, forwarding every chunk to ``sink``.

        Args:
            reader: Raw byte stream from the backend
            sink: Receives each chunk unmodified, as soon as it arrives

        Returns:
            Tool calls and assistant text found in the stream
        """

    @abstractmethod
    def format_tool_results_for_next_call(self, results: list[ToolExecutionResult]) -> list[dict[str, Any]]:
        """Render a tool round-trip as conversation entries for the follow-up call."""


ResponseMap = Callable[[str], str]


class LineBufferedMap:
    """Apply a ``response_map`` to whole lines only.

    Text after the last newline is held back until the next feed, so a JSON
    object or SSE ``data:`` line split across chunks is mapped in one piece.
    """

    def __init__(self, response_map: ResponseMap):
        self.response_map = response_map
        self._pending = ""

    def feed(self, text: str) -> str:
        self._pending += text
        cut = self._pending.rfind("\n")
        if cut == -1:
            return ""
        complete, self._pending = self._pending[:cut + 1], self._pending[cut + 1:]
        return self.response_map(complete)

    def finish(self) -> str:
        rest, self._pending = self._pending, ""
        return self.response_map(rest) if rest else ""
