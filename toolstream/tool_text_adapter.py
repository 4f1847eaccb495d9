"""Tool calling for backends that only produce free text.

Two halves:

* prompt augmentation - the tool catalog and a strict call format are appended
  to the latest user turn, and native tool round-trips in history are rewritten
  as plain assistant text;
* stream extraction - the model's text is scanned for a fenced block whose JSON
  payload is ``{"name": ..., "arguments": {...}}``. Plain text is forwarded as
  soon as it is known not to be part of a fence; detected calls become
  :class:`ToolCallChunk` units. Both unit kinds are then re-encoded as Chat
  Completions delta chunks, so the rest of the pipeline only ever sees that
  wire shape.
"""

from __future__ import annotations

import enum
import json
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

from toolstream.logging import get_logger
from toolstream.streams.base import (
    ByteReader,
    ExtractedToolCall,
    LineBufferedMap,
    OutputSink,
    ResponseMap,
    StreamProcessingResult,
    StreamProcessor,
    ToolExecutionResult,
    utf8_decoder,
)
from toolstream.streams.chat_completions import ChatCompletionsStreamProcessor, delta_chunk
from toolstream.tokens import to_json

log = get_logger(__name__)

FENCE = "```"
CLOSING_FENCE = "\n```"
_BLOCK_RE = re.compile(r"```(?:function|json)?\s*\n(.*?)\n```", re.DOTALL)
_OPENING_LINE_RE = re.compile(r"```(?:function|json)?[ \t]*\n")

GenerateFn = Callable[..., Awaitable[ByteReader]]


@dataclass
class TextChunk:
    """Plain assistant text."""

    text: str


@dataclass
class ToolCallChunk:
    """Tool calls detected in one fenced block."""

    calls: list[ExtractedToolCall] = field(default_factory=list)


AdapterChunk = TextChunk | ToolCallChunk


class ScannerState(enum.Enum):
    OUTSIDE_BLOCK = "outside_block"
    INSIDE_BLOCK = "inside_block"


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex}"


def is_valid_function_call(obj: Any) -> bool:
    """``{name: non-empty str, arguments: object}``; arrays and null rejected."""
    return (
        isinstance(obj, dict)
        and isinstance(obj.get("name"), str)
        and len(obj["name"]) > 0
        and isinstance(obj.get("arguments"), dict)
    )


def _call_from_payload(payload: str) -> ExtractedToolCall | None:
    try:
        obj = json.loads(payload)
    except json.JSONDecodeError as e:
        log.debug("Fenced block is not a function call", payload=payload[:50], error=str(e))
        return None
    if not is_valid_function_call(obj):
        return None
    return ExtractedToolCall(id=new_call_id(), name=obj["name"], arguments=to_json(obj["arguments"]))


def parse_tool_block(block: str, allow_unclosed: bool = False) -> tuple[list[ExtractedToolCall], str]:
    """Extract calls from a fenced block.

    Returns:
        The calls found and the block text with those calls removed. A fenced
        block that is not a valid call (a code sample, say) stays in the text,
        byte for byte; only the text left around a removed call is trimmed.
    """
    calls: list[ExtractedToolCall] = []
    cleaned = block
    for match in _BLOCK_RE.finditer(block):
        call = _call_from_payload(match.group(1).strip())
        if call is not None:
            calls.append(call)
            cleaned = cleaned.replace(match.group(0), "", 1)

    if not calls and allow_unclosed:
        opening = _OPENING_LINE_RE.match(block)
        if opening:
            payload = block[opening.end():].rstrip().rstrip("`").strip()
            call = _call_from_payload(payload) if payload else None
            if call is not None:
                calls.append(call)
                cleaned = ""

    if not calls:
        return calls, block
    return calls, cleaned.strip()


def _withheld_suffix_length(text: str) -> int:
    """Length of a trailing backtick run that may grow into a fence."""
    run = len(text) - len(text.rstrip("`"))
    return run if run < len(FENCE) else 0


class FenceScanner:
    """Incremental OUTSIDE_BLOCK / INSIDE_BLOCK state machine."""

    def __init__(self):
        self.state = ScannerState.OUTSIDE_BLOCK
        self._buffer = ""
        self._block = ""

    def feed(self, text: str) -> list[AdapterChunk]:
        if self.state is ScannerState.INSIDE_BLOCK:
            self._block += text
        else:
            self._buffer += text

        units: list[AdapterChunk] = []
        while True:
            if self.state is ScannerState.OUTSIDE_BLOCK:
                start = self._buffer.find(FENCE)
                if start == -1:
                    safe = len(self._buffer) - _withheld_suffix_length(self._buffer)
                    if safe > 0:
                        units.append(TextChunk(self._buffer[:safe]))
                        self._buffer = self._buffer[safe:]
                    break
                if start > 0:
                    units.append(TextChunk(self._buffer[:start]))
                self._block = self._buffer[start:]
                self._buffer = ""
                self.state = ScannerState.INSIDE_BLOCK
                continue

            end = self._block.find(CLOSING_FENCE)
            if end == -1:
                break
            block_end = end + len(CLOSING_FENCE)
            full_block, rest = self._block[:block_end], self._block[block_end:]
            units.extend(self._block_units(full_block, allow_unclosed=False))
            self._block = ""
            self._buffer = rest
            self.state = ScannerState.OUTSIDE_BLOCK
        return units

    def finish(self) -> list[AdapterChunk]:
        units: list[AdapterChunk] = []
        if self.state is ScannerState.INSIDE_BLOCK and self._block:
            units.extend(self._block_units(self._block, allow_unclosed=True))
        elif self._buffer:
            units.append(TextChunk(self._buffer))
        self._buffer = ""
        self._block = ""
        self.state = ScannerState.OUTSIDE_BLOCK
        return units

    @staticmethod
    def _block_units(block: str, allow_unclosed: bool) -> list[AdapterChunk]:
        calls, cleaned = parse_tool_block(block, allow_unclosed=allow_unclosed)
        units: list[AdapterChunk] = []
        if cleaned:
            units.append(TextChunk(cleaned))
        if calls:
            units.append(ToolCallChunk(calls))
        return units


def _tool_definition(tool: dict[str, Any]) -> dict[str, Any]:
    """Accept chat-style ``{type, function}`` or flattened tool schemas."""
    if isinstance(tool.get("function"), dict):
        function = tool["function"]
    else:
        function = tool
    return {
        "name": function.get("name") or "unknown_tool",
        "description": function.get("description") or "",
        "parameters": function.get("parameters"),
    }


def _fenced_call(name: str, arguments: Any) -> str:
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments)
        except json.JSONDecodeError:
            arguments = {"raw": arguments}
    payload = json.dumps({"name": name, "arguments": arguments}, ensure_ascii=False)
    return f"{FENCE}function\n{payload}\n{FENCE}"


CALL_FORMAT_EXAMPLE = "\n".join([
    f"{FENCE}function",
    "{",
    '  "name": "function_name",',
    '  "arguments": {',
    '    "param1": "value1",',
    '    "param2": "value2"',
    "  }",
    "}",
    FENCE,
])


class ToolCallTextAdapter:
    """Make text-only backends take part in native-style tool calling."""

    def render_tool_catalog(
        self,
        tools: list[dict[str, Any]],
        tool_choice: str | dict[str, Any] | None = None,
    ) -> str:
        lines = ["", "", "You have access to the following tools:", "", "TOOLS:"]
        for position, tool in enumerate(tools, start=1):
            definition = _tool_definition(tool)
            lines.append(f"{position}. {definition['name']}: {definition['description']}")
            lines.append(f"   Parameters: {json.dumps(definition['parameters'], indent=2, ensure_ascii=False)}")
            lines.append("")

        lines.append("To call a tool, answer using exactly this markdown format:")
        lines.append(CALL_FORMAT_EXAMPLE)
        lines.append("")
        lines.append(
            f"The block may also be opened with {FENCE}json. Before calling the tool, say in plain "
            "language what you are going to do. The tool call must be the last part of your response."
        )

        if tool_choice == "none":
            lines.append("Do not use any tool unless it is strictly necessary.")
        elif isinstance(tool_choice, dict):
            chosen = (tool_choice.get("function") or {}).get("name") or tool_choice.get("name")
            if chosen:
                lines.append(f'Use the tool "{chosen}" to answer this question.')
        return "\n".join(lines) + "\n"

    def modify_messages_with_tool_info(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Return a copy of ``messages`` that a text-only backend accepts."""
        modified: list[dict[str, Any]] = []
        for message in messages:
            role = message.get("role")
            if role == "tool":
                content = message.get("content")
                if not isinstance(content, str):
                    content = to_json(content)
                modified.append({
                    "role": "assistant",
                    "content": (
                        f"This was the result of tool call `{message.get('tool_call_id', '')}`:\n"
                        f"{FENCE}json\n{content}\n{FENCE}"
                    ),
                })
            elif role == "assistant" and message.get("tool_calls"):
                parts = [message["content"]] if isinstance(message.get("content"), str) and message["content"] else []
                for call in message["tool_calls"]:
                    function = call.get("function") or {}
                    parts.append(_fenced_call(function.get("name", ""), function.get("arguments") or {}))
                modified.append({"role": "assistant", "content": "\n".join(parts)})
            else:
                modified.append(message)

        if not tools:
            return modified

        last_user = next(
            (idx for idx in range(len(modified) - 1, -1, -1) if modified[idx].get("role") == "user"),
            -1,
        )
        if last_user < 0:
            return modified

        catalog = self.render_tool_catalog(tools, tool_choice)
        user_message = dict(modified[last_user])
        content = user_message.get("content")
        if isinstance(content, list):
            user_message["content"] = [*content, {"type": "text", "text": catalog}]
        else:
            user_message["content"] = f"{content or ''}{catalog}"
        modified[last_user] = user_message
        return modified

    async def extract_units(
        self,
        reader: ByteReader,
        response_map: ResponseMap | None = None,
    ) -> AsyncIterator[AdapterChunk]:
        """Scan the backend text stream, yielding text and tool-call units.

        With a ``response_map`` the raw text is mapped line by line.
        """
        scanner = FenceScanner()
        decoder = utf8_decoder()
        lines = LineBufferedMap(response_map) if response_map is not None else None
        async for chunk in reader:
            text = decoder.decode(chunk)
            if lines is not None:
                text = lines.feed(text)
            for unit in scanner.feed(text):
                yield unit

        tail = decoder.decode(b"", final=True)
        if lines is not None:
            tail = lines.feed(tail) + lines.finish()
        for unit in scanner.feed(tail):
            yield unit
        for unit in scanner.finish():
            yield unit

    async def encode_chat_deltas(self, units: AsyncIterator[AdapterChunk]) -> AsyncIterator[bytes]:
        """Re-encode adapter units as Chat Completions delta chunks."""
        next_index = 0
        async for unit in units:
            if isinstance(unit, ToolCallChunk):
                for call in unit.calls:
                    log.info("Text tool call detected", tool=call.name, call_id=call.id)
                    yield delta_chunk(tool_calls=[{
                        "index": next_index,
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": call.arguments},
                    }])
                    next_index += 1
            elif unit.text:
                yield delta_chunk(unit.text)

        yield delta_chunk(finish_reason="tool_calls" if next_index else "stop")

    def wrap_generate(
        self,
        generate: GenerateFn,
        tools: list[dict[str, Any]],
        tool_choice: str | dict[str, Any] | None = None,
    ) -> GenerateFn:
        """Apply prompt augmentation before every call to ``generate``."""

        async def generate_with_tools(messages: list[dict[str, Any]], *args: Any, **kwargs: Any) -> ByteReader:
            return await generate(
                self.modify_messages_with_tool_info(messages, tools, tool_choice),
                *args,
                **kwargs,
            )

        return generate_with_tools


class TextToolCallStreamProcessor(StreamProcessor):
    """Stream processor for text-only backends.

    The output sink receives Chat Completions delta chunks produced by the
    adapter, not the backend's raw bytes.
    """

    def __init__(
        self,
        adapter: ToolCallTextAdapter | None = None,
        response_map: ResponseMap | None = None,
    ):
        self.adapter = adapter or ToolCallTextAdapter()
        self.response_map = response_map
        self._chat = ChatCompletionsStreamProcessor()

    async def process_stream(self, reader: ByteReader, sink: OutputSink) -> StreamProcessingResult:
        units = self.adapter.extract_units(reader, self.response_map)
        return await self._chat.process_stream(self.adapter.encode_chat_deltas(units), sink)

    def format_tool_results_for_next_call(self, results: list[ToolExecutionResult]) -> list[dict[str, Any]]:
        return self._chat.format_tool_results_for_next_call(results)
