"""Stream processor for Responses API Server-Sent Events."""

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

OUTPUT_ITEM_ADDED = "response.output_item.added"
OUTPUT_ITEM_DONE = "response.output_item.done"
ARGUMENTS_DELTA = "response.function_call_arguments.delta"
ARGUMENTS_DONE = "response.function_call_arguments.done"
OUTPUT_TEXT_DELTA = "response.output_text.delta"


class ResponsesEventAccumulator:
    """Track pending and completed function calls across typed SSE events."""

    def __init__(self):
        self.pending: dict[Any, ExtractedToolCall] = {}
        self.completed: list[ExtractedToolCall] = []
        self.has_assistant_content = False
        self.raw_content = ""
        self._event_type = ""

    def feed_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            # Blank line ends one SSE record.
            self._event_type = ""
            return
        if line.startswith(":"):
            return
        if line.startswith("event:"):
            self._event_type = line[6:].strip()
            return

        payload = line[5:].strip() if line.startswith("data:") else line
        if not payload or payload == "[DONE]":
            return
        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            log.debug("Skipping malformed SSE data line", line=payload[:80])
            return
        if not isinstance(event, dict):
            return
        self.apply(event, str(event.get("type") or self._event_type))

    def apply(self, event: dict[str, Any], event_type: str) -> None:
        output_index = event.get("output_index")

        if event_type == OUTPUT_ITEM_ADDED:
            item = event.get("item") or {}
            if isinstance(item, dict) and item.get("type") == "function_call":
                self.pending[output_index] = ExtractedToolCall(
                    id=str(item.get("call_id") or item.get("id") or ""),
                    name=str(item.get("name") or ""),
                    arguments=str(item.get("arguments") or ""),
                )

        elif event_type == ARGUMENTS_DELTA:
            call = self.pending.get(output_index)
            if call is not None:
                call.arguments += str(event.get("delta") or "")

        elif event_type == ARGUMENTS_DONE:
            call = self.pending.pop(output_index, None)
            if call is not None:
                if event.get("arguments"):
                    call.arguments = str(event["arguments"])
                self.completed.append(call)

        elif event_type == OUTPUT_ITEM_DONE:
            item = event.get("item") or {}
            call = self.pending.pop(output_index, None)
            if call is not None:
                if isinstance(item, dict) and item.get("arguments"):
                    call.arguments = str(item["arguments"])
                self.completed.append(call)

        elif event_type == OUTPUT_TEXT_DELTA:
            delta = event.get("delta")
            if isinstance(delta, str) and delta:
                self.has_assistant_content = True
                self.raw_content += delta

    def result(self) -> StreamProcessingResult:
        return StreamProcessingResult(
            tool_calls=complete_calls(self.completed),
            has_assistant_content=self.has_assistant_content,
            raw_content=self.raw_content,
        )


class ResponsesAPIStreamProcessor(StreamProcessor):
    """Handles function calls in Responses API streaming output."""

    async def process_stream(self, reader: ByteReader, sink: OutputSink) -> StreamProcessingResult:
        accumulator = ResponsesEventAccumulator()
        decoder = utf8_decoder()
        buffer = ""

        async for chunk in reader:
            await sink.send(chunk)
            buffer += decoder.decode(chunk)

            newline_index = buffer.find("\n")
            while newline_index != -1:
                accumulator.feed_line(buffer[:newline_index])
                buffer = buffer[newline_index + 1:]
                newline_index = buffer.find("\n")

        buffer += decoder.decode(b"", final=True)
        for line in buffer.split("\n"):
            accumulator.feed_line(line)

        result = accumulator.result()
        log.debug(
            "Responses stream processed",
            tool_calls=len(result.tool_calls),
            content_chars=len(result.raw_content),
        )
        return result

    def format_tool_results_for_next_call(self, results: list[ToolExecutionResult]) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        for r in results:
            items.append({
                "type": "function_call",
                "call_id": r.tool_call_id,
                "name": r.tool_name,
                "arguments": r.arguments,
            })
            items.append({
                "type": "function_call_output",
                "call_id": r.tool_call_id,
                "output": to_json(r.result),
            })
        return items
