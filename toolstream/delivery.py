"""Turn the loop's output stream into user-facing text.

The output of :class:`~toolstream.agent_loop.AgentLoopExecutor` is a byte
stream in the backend's wire format. Chat front-ends want plain text
increments, the full reply once the turn ends, and replies cut to a size the
delivery channel accepts.
"""

import inspect
import json
from typing import Any, AsyncIterator, Callable

from toolstream.logging import get_logger
from toolstream.streams.base import ByteReader, LineBufferedMap, ResponseMap, utf8_decoder

log = get_logger(__name__)

_json_decoder = json.JSONDecoder()

OUTPUT_TEXT_DELTA = "response.output_text.delta"


def _json_values(text: str) -> list[Any]:
    """Decode every JSON value in ``text``, skipping SSE framing and junk lines."""
    values: list[Any] = []
    rest = text
    while True:
        rest = rest.lstrip()
        if not rest:
            break
        if rest.startswith("data:"):
            rest = rest[5:]
            continue
        if rest.startswith("event:") or rest.startswith(":"):
            newline = rest.find("\n")
            rest = "" if newline == -1 else rest[newline + 1:]
            continue
        try:
            value, end = _json_decoder.raw_decode(rest)
        except json.JSONDecodeError:
            newline = rest.find("\n")
            if newline == -1:
                break
            rest = rest[newline + 1:]
            continue
        values.append(value)
        rest = rest[end:]
    return values


def _delta_content(value: Any) -> str:
    if not isinstance(value, dict):
        return ""
    choices = value.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return ""
    content = delta.get("content")
    return content if isinstance(content, str) else ""


def chat_response_map(chunk: str) -> str:
    """Extract assistant text from one or more Chat Completions delta objects."""
    return "".join(_delta_content(value) for value in _json_values(chunk))


def responses_response_map(chunk: str) -> str:
    """Extract assistant text from Responses API events.

    Chat-shaped delta objects (the loop's warning and error notices) are
    understood too.
    """
    parts = []
    for value in _json_values(chunk):
        if not isinstance(value, dict):
            continue
        if value.get("type") == OUTPUT_TEXT_DELTA:
            delta = value.get("delta")
            if isinstance(delta, str):
                parts.append(delta)
        else:
            parts.append(_delta_content(value))
    return "".join(parts)


async def relay_stream(
    reader: ByteReader,
    response_map: ResponseMap,
    on_complete: Callable[[str], Any] | None = None,
) -> AsyncIterator[str]:
    """Yield mapped text increments from ``reader``.

    ``on_complete`` receives the full text exactly once, after the reader is
    exhausted. It is not called when the consumer stops early.
    """
    decoder = utf8_decoder()
    lines = LineBufferedMap(response_map)
    full_text = ""

    async for chunk in reader:
        text = lines.feed(decoder.decode(chunk))
        if text:
            full_text += text
            yield text

    text = lines.feed(decoder.decode(b"", final=True)) + lines.finish()
    if text:
        full_text += text
        yield text

    log.debug("Relay finished", chars=len(full_text))
    if on_complete is not None:
        result = on_complete(full_text)
        if inspect.isawaitable(result):
            await result


def split_message(text: str, limit: int = 2000) -> list[str]:
    """Split a reply into parts of at most ``limit`` characters.

    Cuts at the last newline inside the window; a single line longer than
    ``limit`` is cut hard.
    """
    if limit <= 0:
        raise ValueError("limit must be positive")

    parts: list[str] = []
    remaining = text
    while len(remaining) > limit:
        cut = remaining.rfind("\n", 0, limit + 1)
        if cut <= 0:
            parts.append(remaining[:limit])
            remaining = remaining[limit:]
            continue
        parts.append(remaining[:cut])
        remaining = remaining[cut + 1:]
    if remaining or not parts:
        parts.append(remaining)
    return parts
