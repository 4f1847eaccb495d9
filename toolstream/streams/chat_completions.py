"""Stream processor for Chat Completions style delta chunks."""

import json
from typing import Any

from toolstream.logging import get_logger
from toolstream.streams.base import (
    ByteReader,
    ExtractedToolCall,
    OutputSink,
    StreamProcessingResult,
    StreamProcessor,
    ToolExecutionResult,
    complete_calls,
    utf8_decoder,
)
from toolstream.tokens import to_json

log = get_logger(__name__)

_json_decoder = json.JSONDecoder()


def delta_chunk(
    content: str = "",
    tool_calls: list[dict[str, Any]] | None = None,
    finish_reason: str | None = None,
) -> bytes:
    """Encode one Chat Completions streaming delta as a JSON line."""
    delta: dict[str, Any] = {"content": content}
    if tool_calls:
        delta["tool_calls"] = tool_calls
    return (to_json({"choices": [{"delta": delta, "finish_reason": finish_reason}]}) + "\n").encode("utf-8")


class DeltaAccumulator:
    """Fold ``{choices: [{delta: ...}]}`` objects into content and tool calls.

    Tool-call fragments are keyed by their ``index`` and kept in first-seen
    order; ``id`` and ``function.name`` overwrite, ``function.arguments``
    appends.
    """

    def __init__(self):
        self.calls: dict[int, ExtractedToolCall] = {}
        self.has_assistant_content = False
        self.raw_content = ""

    def apply(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            return
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return
        delta = choices[0].get("delta")
        if not isinstance(delta, dict):
            return

        content = delta.get("content")
        if isinstance(content, str) and content:
            self.has_assistant_content = True
            self.raw_content += content

        for fragment in delta.get("tool_calls") or []:
            if not isinstance(fragment, dict):
                continue
            index = fragment.get("index")
            if not isinstance(index, int):
                index = 0
            function = fragment.get("function") or {}

            call = self.calls.get(index)
            if call is None:
                call = ExtractedToolCall(id="", name="")
                self.calls[index] = call
            if fragment.get("id"):
                call.id = str(fragment["id"])
            if function.get("name"):
                call.name = str(function["name"])
            if function.get("arguments"):
                call.arguments += str(function["arguments"])

    def result(self) -> StreamProcessingResult:
        return StreamProcessingResult(
            tool_calls=complete_calls(list(self.calls.values())),
            has_assistant_content=self.has_assistant_content,
            raw_content=self.raw_content,
        )


class JsonObjectFramer:
    """Cut a text stream into whole JSON values.

    Whitespace and an optional ``data:`` prefix between values are skipped. A
    fragment that cannot be parsed waits for more text until a newline shows
    it is not just incomplete; that line is then dropped.
    """

    def __init__(self):
        self._buffer = ""

    def feed(self, text: str) -> list[Any]:
        self._buffer += text
        values: list[Any] = []
        while True:
            self._buffer = self._buffer.lstrip()
            if not self._buffer:
                break
            if self._buffer.startswith("data:"):
                self._buffer = self._buffer[5:]
                continue
            try:
                value, end = _json_decoder.raw_decode(self._buffer)
            except json.JSONDecodeError:
                newline = self._buffer.find("\n")
                if newline == -1:
                    break
                log.debug("Skipping unparseable stream line", line=self._buffer[:newline][:80])
                self._buffer = self._buffer[newline + 1:]
                continue
            self._buffer = self._buffer[end:]
            values.append(value)
        return values

    def finish(self) -> list[Any]:
        values = self.feed("\n")
        if self._buffer:
            log.debug("Dropping trailing stream fragment", fragment=self._buffer[:80])
            self._buffer = ""
        return values


class ChatCompletionsStreamProcessor(StreamProcessor):
    """Handles tool calls in Chat Completions streaming responses."""

    async def process_stream(self, reader: ByteReader, sink: OutputSink) -> StreamProcessingResult:
        accumulator = DeltaAccumulator()
        framer = JsonObjectFramer()
        decoder = utf8_decoder()

        async for chunk in reader:
            await sink.send(chunk)
            for payload in framer.feed(decoder.decode(chunk)):
                accumulator.apply(payload)

        tail = decoder.decode(b"", final=True)
        if tail:
            for payload in framer.feed(tail):
                accumulator.apply(payload)
        for payload in framer.finish():
            accumulator.apply(payload)

        result = accumulator.result()
        log.debug(
            "Chat completions stream processed",
            tool_calls=len(result.tool_calls),
            content_chars=len(result.raw_content),
        )
        return result

    def format_tool_results_for_next_call(self, results: list[ToolExecutionResult]) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = [
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {
                        "id": r.tool_call_id,
                        "type": "function",
                        "function": {"name": r.tool_name, "arguments": r.arguments},
                    }
                    for r in results
                ],
            }
        ]
        for r in results:
            messages.append({
                "role": "tool",
                "tool_call_id": r.tool_call_id,
                "content": to_json(r.result),
            })
        return messages
