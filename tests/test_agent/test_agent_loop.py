import asyncio
import json
import time

import pytest

from toolstream.agent_loop import (
    AgentLoopConfig,
    AgentLoopExecutor,
    latest_user_query,
    parse_tool_arguments,
)
from toolstream.config import AgentConfig
from toolstream.context_compressor import COMPRESSION_WARNING_MSG, ContextCompressor
from toolstream.exceptions import LLMAPIError, ToolExecutionError
from toolstream.llm import LLMProvider, LLMResponse, Message
from toolstream.streams.chat_completions import ChatCompletionsStreamProcessor, delta_chunk
from toolstream.tools.registry import FunctionTool, Tool, ToolRegistry


class ScriptedProvider(LLMProvider):
    def __init__(self, replies: list[str] | None = None, error: Exception | None = None):
        self.replies = list(replies or [])
        self.error = error
        self.calls: list[dict] = []

    async def complete(self, messages, tools=None, temperature=None, max_tokens=None) -> LLMResponse:
        self.calls.append({"messages": messages, "temperature": temperature, "max_tokens": max_tokens})
        if self.error is not None:
            raise self.error
        return LLMResponse(content=self.replies.pop(0) if self.replies else "")

    async def stream_chat(self, messages, tools=None, temperature=None, max_tokens=None):
        if False:
            yield b""


class EchoTool(Tool):
    name = "echo"
    description = "Echo the text back"
    parameters = {
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
    }

    def __init__(self, log: list[str] | None = None, delay: float = 0.0):
        self.log = log if log is not None else []
        self.delay = delay

    async def execute(self, text: str = "", **kwargs):
        self.log.append(f"start:{text}")
        if self.delay:
            await asyncio.sleep(self.delay)
        self.log.append(f"end:{text}")
        return {"echo": text}


class HangingTool(Tool):
    name = "hang"
    description = "Never finishes"
    parameters = {"type": "object", "properties": {}}

    def __init__(self):
        self.cancelled = False

    async def execute(self, **kwargs):
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise


class BigTool(Tool):
    name = "big"
    description = "Returns a large payload"
    parameters = {"type": "object", "properties": {}}

    async def execute(self, **kwargs):
        return {"data": "x" * 6000}


async def _reader(chunks: list[bytes]):
    for chunk in chunks:
        yield chunk


def _text_reply(text: str) -> list[bytes]:
    return [delta_chunk(text), delta_chunk(finish_reason="stop")]


def _tool_reply(*calls: tuple[str, str, str]) -> list[bytes]:
    chunks = [
        delta_chunk(tool_calls=[{
            "index": index,
            "id": call_id,
            "type": "function",
            "function": {"name": name, "arguments": arguments},
        }])
        for index, (call_id, name, arguments) in enumerate(calls)
    ]
    chunks.append(delta_chunk(finish_reason="tool_calls"))
    return chunks


class ScriptedBackend:
    """``generate`` that replays one scripted reply per call."""

    def __init__(self, replies: list[list[bytes]]):
        self.replies = list(replies)
        self.calls: list[list[dict]] = []

    async def __call__(self, messages, *args, **kwargs):
        self.calls.append([dict(m) for m in messages])
        return _reader(self.replies.pop(0))


def _executor(backend, tools, **kwargs) -> AgentLoopExecutor:
    kwargs.setdefault("config", AgentLoopConfig(max_iterations=5, tool_execution_timeout=1.0))
    kwargs.setdefault("max_tokens", 128000)
    return AgentLoopExecutor(
        stream_processor=ChatCompletionsStreamProcessor(),
        generate=backend,
        registry=ToolRegistry(tools),
        **kwargs,
    )


async def _collect(stream) -> list[bytes]:
    return [chunk async for chunk in stream]


def _tool_messages(messages: list[dict]) -> list[dict]:
    return [m for m in messages if m.get("role") == "tool"]


@pytest.mark.asyncio
async def test_reply_without_tool_calls_passes_through():
    backend = ScriptedBackend([])
    executor = _executor(backend, [EchoTool()])
    messages = [{"role": "user", "content": "oi"}]
    first = _text_reply("Olá!")

    output = await _collect(executor.execute(_reader(first), messages))

    assert output == first
    assert backend.calls == []
    assert messages == [{"role": "user", "content": "oi"}]


@pytest.mark.asyncio
async def test_tool_round_trip_reinvokes_backend_with_results():
    first = _tool_reply(("call_1", "echo", '{"text": "hi"}'))
    second = _text_reply("done")
    backend = ScriptedBackend([second])
    executor = _executor(backend, [EchoTool()])
    messages = [{"role": "user", "content": "say hi"}]

    output = await _collect(executor.execute(_reader(first), messages))

    assert output == first + second
    assert len(backend.calls) == 1
    sent = backend.calls[0]
    assert sent[1]["role"] == "assistant"
    assert sent[1]["tool_calls"][0]["id"] == "call_1"
    assert _tool_messages(sent) == [{"role": "tool", "tool_call_id": "call_1", "content": '{"echo":"hi"}'}]
    assert len(messages) == 3


@pytest.mark.asyncio
async def test_generate_receives_extra_arguments():
    seen = []

    async def generate(messages, model, stream=False):
        seen.append((model, stream))
        return _reader(_text_reply("ok"))

    executor = _executor(generate, [EchoTool()])
    first = _tool_reply(("call_1", "echo", '{"text": "a"}'))

    await _collect(executor.execute(_reader(first), [{"role": "user", "content": "x"}], "gpt-x", stream=True))

    assert seen == [("gpt-x", True)]


@pytest.mark.asyncio
async def test_tools_run_sequentially_in_call_order():
    log: list[str] = []
    first = _tool_reply(
        ("call_1", "echo", '{"text": "a"}'),
        ("call_2", "echo", '{"text": "b"}'),
    )
    backend = ScriptedBackend([_text_reply("ok")])
    executor = _executor(backend, [EchoTool(log, delay=0.01)])
    messages = [{"role": "user", "content": "x"}]

    await _collect(executor.execute(_reader(first), messages))

    assert log == ["start:a", "end:a", "start:b", "end:b"]
    assert [m["tool_call_id"] for m in _tool_messages(messages)] == ["call_1", "call_2"]


@pytest.mark.asyncio
async def test_max_iterations_emits_warning_and_stops():
    looping = _tool_reply(("call_1", "echo", '{"text": "again"}'))
    backend = ScriptedBackend([looping, looping])
    executor = _executor(backend, [EchoTool()], config=AgentLoopConfig(max_iterations=1))

    output = await _collect(executor.execute(_reader(looping), [{"role": "user", "content": "x"}]))

    assert len(backend.calls) == 1
    warning = json.loads(output[-1])
    assert warning["choices"][0]["delta"]["content"] == "⚠️ Atingi o limite de 1 iterações."
    assert output[:-1] == looping


@pytest.mark.asyncio
async def test_warning_is_plain_text_when_not_formatting_as_chat():
    looping = _tool_reply(("call_1", "echo", '{"text": "again"}'))
    backend = ScriptedBackend([looping])
    executor = _executor(backend, [EchoTool()], config=AgentLoopConfig(max_iterations=1), format_as_chat=False)

    output = await _collect(executor.execute(_reader(looping), [{"role": "user", "content": "x"}]))

    assert output[-1] == "⚠️ Atingi o limite de 1 iterações.".encode("utf-8")


@pytest.mark.asyncio
async def test_unknown_tool_is_reported_in_band():
    backend = ScriptedBackend([_text_reply("sorry")])
    executor = _executor(backend, [EchoTool()])
    messages = [{"role": "user", "content": "x"}]

    await _collect(executor.execute(_reader(_tool_reply(("call_1", "nope", "{}"))), messages))

    assert json.loads(_tool_messages(messages)[0]["content"]) == {"error": "Function nope not found"}


@pytest.mark.asyncio
async def test_invalid_json_arguments_are_reported_in_band():
    backend = ScriptedBackend([_text_reply("sorry")])
    executor = _executor(backend, [EchoTool()])
    messages = [{"role": "user", "content": "x"}]

    await _collect(executor.execute(_reader(_tool_reply(("call_1", "echo", '{"text": '))), messages))

    error = json.loads(_tool_messages(messages)[0]["content"])["error"]
    assert "Invalid JSON arguments" in error


@pytest.mark.asyncio
async def test_missing_required_argument_is_reported_in_band():
    backend = ScriptedBackend([_text_reply("sorry")])
    executor = _executor(backend, [EchoTool()])
    messages = [{"role": "user", "content": "x"}]

    await _collect(executor.execute(_reader(_tool_reply(("call_1", "echo", "{}"))), messages))

    error = json.loads(_tool_messages(messages)[0]["content"])["error"]
    assert "Missing required argument: text" in error


@pytest.mark.asyncio
async def test_hanging_tool_times_out_and_loop_continues():
    hanging = HangingTool()
    backend = ScriptedBackend([_text_reply("moving on")])
    executor = _executor(
        backend,
        [hanging],
        config=AgentLoopConfig(max_iterations=3, tool_execution_timeout=0.01),
    )
    messages = [{"role": "user", "content": "x"}]

    output = await _collect(executor.execute(_reader(_tool_reply(("call_1", "hang", ""))), messages))

    assert json.loads(_tool_messages(messages)[0]["content"]) == {"error": "Tool execution timeout"}
    assert hanging.cancelled is True
    assert output[-2:] == _text_reply("moving on")


@pytest.mark.asyncio
async def test_blocking_sync_tool_times_out_and_loop_continues():
    slow = FunctionTool("slow", lambda args: time.sleep(0.3) or "late")
    backend = ScriptedBackend([_text_reply("moving on")])
    executor = _executor(
        backend,
        [slow],
        config=AgentLoopConfig(max_iterations=3, tool_execution_timeout=0.05),
    )
    messages = [{"role": "user", "content": "x"}]

    started = time.monotonic()
    output = await _collect(executor.execute(_reader(_tool_reply(("call_1", "slow", ""))), messages))

    assert time.monotonic() - started < 0.3
    assert json.loads(_tool_messages(messages)[0]["content"]) == {"error": "Tool execution timeout"}
    assert output[-2:] == _text_reply("moving on")


@pytest.mark.asyncio
async def test_generate_failure_emits_single_error_chunk():
    async def generate(messages, *args, **kwargs):
        raise LLMAPIError("API error 500: boom", status_code=500)

    executor = _executor(generate, [EchoTool()])
    first = _tool_reply(("call_1", "echo", '{"text": "a"}'))

    output = await _collect(executor.execute(_reader(first), [{"role": "user", "content": "x"}]))

    assert output[:-1] == first
    error = json.loads(output[-1])
    assert error["choices"][0]["delta"]["content"] == "Erro: API error 500: boom"


@pytest.mark.asyncio
async def test_callbacks_are_invoked():
    events: list[tuple] = []
    config = AgentLoopConfig(
        max_iterations=5,
        on_iteration_start=lambda i: events.append(("start", i)),
        on_tool_execution=lambda name, args: events.append(("tool", name, args)),
        on_iteration_complete=lambda i, more: events.append(("complete", i, more)),
    )
    backend = ScriptedBackend([_text_reply("ok")])
    executor = _executor(backend, [EchoTool()], config=config)

    await _collect(executor.execute(_reader(_tool_reply(("call_1", "echo", '{"text":"a"}'))), [{"role": "user", "content": "x"}]))

    assert events == [
        ("start", 1),
        ("tool", "echo", '{"text":"a"}'),
        ("complete", 1, True),
        ("start", 2),
        ("complete", 2, False),
    ]


@pytest.mark.asyncio
async def test_oversized_results_are_summarized_near_the_limit():
    provider = ScriptedProvider(replies=["resumo curto"])
    backend = ScriptedBackend([_text_reply("ok")])
    executor = _executor(backend, [BigTool(), EchoTool()], provider=provider, max_tokens=1000)
    messages = [{"role": "user", "content": "what is in big?"}]
    first = _tool_reply(("call_1", "big", "{}"), ("call_2", "echo", '{"text":"small"}'))

    await _collect(executor.execute(_reader(first), messages))

    results = [json.loads(m["content"]) for m in _tool_messages(messages)]
    assert results[0]["summary"] == "resumo curto"
    assert results[0]["_original_size"] == len(json.dumps({"data": "x" * 6000}, separators=(",", ":")))
    assert results[1] == {"echo": "small"}
    prompt_message = provider.calls[0]["messages"][0]
    assert isinstance(prompt_message, Message)
    assert "what is in big?" in prompt_message.content
    assert provider.calls[0]["max_tokens"] == 1000
    assert provider.calls[0]["temperature"] == 0


@pytest.mark.asyncio
async def test_failed_summarization_truncates_result():
    provider = ScriptedProvider(error=LLMAPIError("down"))
    backend = ScriptedBackend([_text_reply("ok")])
    executor = _executor(backend, [BigTool()], provider=provider, max_tokens=1000)
    messages = [{"role": "user", "content": "x"}]

    await _collect(executor.execute(_reader(_tool_reply(("call_1", "big", "{}"))), messages))

    result = json.loads(_tool_messages(messages)[0]["content"])
    assert result["_summarization_failed"] is True
    assert len(result["truncated"]) == 4000


@pytest.mark.asyncio
async def test_results_untouched_when_summarization_disabled():
    provider = ScriptedProvider(replies=["unused"])
    backend = ScriptedBackend([_text_reply("ok")])
    executor = _executor(
        backend,
        [BigTool()],
        provider=provider,
        max_tokens=1000,
        config=AgentLoopConfig(enable_tool_result_summarization=False),
    )
    messages = [{"role": "user", "content": "x"}]

    await _collect(executor.execute(_reader(_tool_reply(("call_1", "big", "{}"))), messages))

    assert json.loads(_tool_messages(messages)[0]["content"]) == {"data": "x" * 6000}
    assert provider.calls == []


@pytest.mark.asyncio
async def test_results_untouched_below_threshold():
    provider = ScriptedProvider(replies=["unused"])
    backend = ScriptedBackend([_text_reply("ok")])
    executor = _executor(backend, [BigTool()], provider=provider, max_tokens=128000)
    messages = [{"role": "user", "content": "x"}]

    await _collect(executor.execute(_reader(_tool_reply(("call_1", "big", "{}"))), messages))

    assert json.loads(_tool_messages(messages)[0]["content"]) == {"data": "x" * 6000}
    assert provider.calls == []


@pytest.mark.asyncio
async def test_run_compresses_history_before_first_call():
    compressor = ContextCompressor(ScriptedProvider(replies=["resumo"]))
    backend = ScriptedBackend([_text_reply("ok")])
    executor = _executor(backend, [EchoTool()], compressor=compressor, max_tokens=100)
    messages = [
        {"role": "user", "content": "a" * 400},
        {"role": "assistant", "content": "b" * 400},
        {"role": "user", "content": "nova pergunta"},
    ]

    output = await _collect(executor.run(messages))

    notice = json.loads(output[0])
    assert notice["choices"][0]["delta"]["content"] == COMPRESSION_WARNING_MSG
    assert messages[0]["content"].startswith("[Resumo do contexto anterior]\nresumo")
    assert messages[-1] == {"role": "user", "content": "nova pergunta"}
    assert backend.calls[0] == messages


@pytest.mark.asyncio
async def test_run_reports_initial_generation_failure():
    async def generate(messages, *args, **kwargs):
        raise LLMAPIError("unreachable")

    executor = _executor(generate, [EchoTool()])

    output = await _collect(executor.run([{"role": "user", "content": "x"}]))

    assert [json.loads(c)["choices"][0]["delta"]["content"] for c in output] == ["Erro: unreachable"]


@pytest.mark.asyncio
async def test_closing_output_early_closes_backend_stream():
    closed = asyncio.Event()

    async def endless():
        try:
            while True:
                yield delta_chunk("tick")
                await asyncio.sleep(0)
        finally:
            closed.set()

    executor = _executor(ScriptedBackend([]), [EchoTool()])
    stream = executor.execute(endless(), [{"role": "user", "content": "x"}])

    first = await stream.__anext__()
    await stream.aclose()

    assert json.loads(first)["choices"][0]["delta"]["content"] == "tick"
    await asyncio.wait_for(closed.wait(), timeout=1.0)


def test_parse_tool_arguments():
    assert parse_tool_arguments("t", "") == {}
    assert parse_tool_arguments("t", '{"a": 1}') == {"a": 1}
    with pytest.raises(ToolExecutionError):
        parse_tool_arguments("t", "[1]")


def test_latest_user_query_handles_content_parts():
    messages = [
        {"role": "user", "content": "first"},
        {"role": "user", "content": [{"type": "text", "text": "second"}]},
        {"role": "assistant", "content": "reply"},
    ]

    assert latest_user_query(messages) == "second"


def test_config_from_settings_applies_overrides():
    config = AgentLoopConfig.from_settings(AgentConfig(max_iterations=7), tool_execution_timeout=2.5)

    assert config.max_iterations == 7
    assert config.tool_execution_timeout == 2.5
    assert config.enable_tool_result_summarization is True


@pytest.mark.asyncio
async def test_history_compressed_before_tool_results_are_appended():
    compressor = ContextCompressor(ScriptedProvider(replies=["resumo"]))
    backend = ScriptedBackend([_text_reply("ok")])
    executor = _executor(backend, [EchoTool()], compressor=compressor, max_tokens=100)
    messages = [{"role": "user", "content": "x" * 200}]
    long_text = "y" * 150

    output = await _collect(executor.execute(_reader(_tool_reply(("call_1", "echo", json.dumps({"text": long_text})))), messages))

    contents = [json.loads(c)["choices"][0]["delta"]["content"] for c in output]
    assert COMPRESSION_WARNING_MSG in contents
    assert messages[0] == {"role": "assistant", "content": "[Resumo do contexto anterior]\nresumo"}
    assert messages[1]["tool_calls"][0]["id"] == "call_1"
    assert _tool_messages(messages)[0]["content"] == json.dumps({"echo": long_text}, separators=(",", ":"))
