"""Iterative agent loop: stream, execute tools, fold results back, re-invoke.

One loop serves one user request. Each iteration hands the current backend
stream to a :class:`StreamProcessor` (which forwards every byte to the output
stream as it arrives), executes the extracted tool calls one after another,
shrinks oversized results when the context budget is at risk, appends the
formatted round-trip to the conversation and asks the backend again. The loop
ends when an iteration yields no tool calls, when the iteration cap is hit
(warning chunk), or on an unexpected exception (single error chunk). Nothing
is raised to the consumer of the output stream.
"""

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Awaitable, Callable

from structlog.contextvars import bind_contextvars

from toolstream.config import AgentConfig, get_config
from toolstream.context_compressor import COMPRESSION_WARNING_MSG, ContextCompressor
from toolstream.exceptions import LLMError, ToolExecutionError, ToolTimeoutError
from toolstream.instructions import InstructionLoader, get_instructions
from toolstream.llm import LLMProvider, Message
from toolstream.logging import get_logger
from toolstream.streams.base import (
    ByteReader,
    ExtractedToolCall,
    StreamProcessor,
    ToolExecutionResult,
)
from toolstream.streams.channel import StreamChannel
from toolstream.streams.chat_completions import delta_chunk
from toolstream.tokens import compression_limit, estimate_tokens, should_compress, to_json
from toolstream.tools.registry import Tool, ToolRegistry

log = get_logger(__name__)

GenerateFn = Callable[..., Awaitable[ByteReader]]

MAX_ITERATIONS_WARNING = "⚠️ Atingi o limite de {max_iterations} iterações."
ERROR_MESSAGE = "Erro: {message}"

OVERSIZED_RESULT_CHARS = 4000
SUMMARY_INPUT_CHARS = 15000
SUMMARY_MAX_TOKENS = 1000


@dataclass(frozen=True)
class AgentLoopConfig:
    """Settings for one loop invocation."""

    max_iterations: int = 10
    tool_execution_timeout: float = 30.0  # seconds
    enable_tool_result_summarization: bool = True
    on_iteration_start: Callable[[int], None] | None = None
    on_tool_execution: Callable[[str, str], None] | None = None
    on_iteration_complete: Callable[[int, bool], None] | None = None

    @classmethod
    def from_settings(cls, settings: AgentConfig | None = None, **overrides: Any) -> "AgentLoopConfig":
        """Build from the ``agent`` config section, with keyword overrides."""
        agent = settings or get_config().agent
        values: dict[str, Any] = {
            "max_iterations": agent.max_iterations,
            "tool_execution_timeout": agent.tool_execution_timeout,
            "enable_tool_result_summarization": agent.enable_tool_result_summarization,
        }
        values.update(overrides)
        return cls(**values)


DEFAULT_AGENT_CONFIG = AgentLoopConfig()


@dataclass
class AgentLoopState:
    iteration: int = 0
    total_tokens_estimate: int = 0
    is_complete: bool = False
    last_error: Exception | None = None


async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
    """Cancel task and await it to avoid pending task warnings."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        pass


async def _close_reader(reader: Any) -> None:
    """Close an upstream reader that will not be read to the end."""
    aclose = getattr(reader, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as e:
        log.debug("Closing upstream reader failed", error=str(e))


def parse_tool_arguments(tool_name: str, raw: str) -> dict[str, Any]:
    """Decode the JSON argument text of a call into keyword arguments."""
    if not (raw or "").strip():
        return {}
    try:
        arguments = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ToolExecutionError(tool_name, f"Invalid JSON arguments: {e}")
    if not isinstance(arguments, dict):
        raise ToolExecutionError(tool_name, "Arguments must be a JSON object")
    return arguments


def latest_user_query(messages: list[dict[str, Any]]) -> str:
    for message in reversed(messages):
        if message.get("role") != "user":
            continue
        content = message.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return " ".join(
                str(part.get("text", "")) for part in content if isinstance(part, dict)
            ).strip()
    return ""


class AgentLoopExecutor:
    """Drive the stream / tools / re-invoke cycle for one request.

    Args:
        stream_processor: Parser for the backend's wire format
        generate: ``async (messages, *args, **kwargs) -> reader`` calling the backend again
        registry: Tools available to the model
        provider: Used for tool-result summarization; without it oversized
            results are truncated
        compressor: Optional history compressor
        max_tokens: Context budget; defaults to ``context.max_tokens``
        user_query: Question the summaries are focused on; defaults to the
            latest user message
        config: Loop settings; defaults to the ``agent`` config section
        format_as_chat: Wrap warning and error text as a chat delta chunk
    """

    def __init__(
        self,
        stream_processor: StreamProcessor,
        generate: GenerateFn,
        registry: ToolRegistry,
        provider: LLMProvider | None = None,
        compressor: ContextCompressor | None = None,
        max_tokens: int | None = None,
        user_query: str = "",
        config: AgentLoopConfig | None = None,
        format_as_chat: bool = True,
        instructions: InstructionLoader | None = None,
    ):
        self.stream_processor = stream_processor
        self.generate = generate
        self.registry = registry
        self.provider = provider
        self.compressor = compressor
        self.max_tokens = max_tokens if max_tokens is not None else get_config().context.max_tokens
        self.user_query = user_query
        self.config = config or AgentLoopConfig.from_settings()
        self.format_as_chat = format_as_chat
        self.instructions = instructions or get_instructions()

    def _encode_notice(self, text: str) -> bytes:
        if self.format_as_chat:
            return delta_chunk(text)
        return text.encode("utf-8")

    async def run(self, messages: list[dict[str, Any]], *generate_args: Any, **generate_kwargs: Any) -> AsyncIterator[bytes]:
        """Run a full turn: compress history if needed, call the backend, loop.

        ``messages`` is updated in place. A trailing user message is kept out
        of compression.
        """
        if not self.user_query:
            self.user_query = latest_user_query(messages)

        if self.compressor is not None:
            pending = messages[-1:] if messages and messages[-1].get("role") == "user" else []
            history = messages[: len(messages) - len(pending)]
            compression = await self.compressor.compress_if_needed(history, self.max_tokens)
            if compression.did_compress:
                messages[:] = compression.history + pending
                yield self._encode_notice(COMPRESSION_WARNING_MSG)

        try:
            reader = await self.generate(messages, *generate_args, **generate_kwargs)
        except Exception as e:
            log.error("Initial generation failed", error=str(e))
            yield self._encode_notice(ERROR_MESSAGE.format(message=e))
            return

        async for chunk in self.execute(reader, messages, *generate_args, **generate_kwargs):
            yield chunk

    async def execute(
        self,
        initial_reader: ByteReader,
        messages: list[dict[str, Any]],
        *generate_args: Any,
        **generate_kwargs: Any,
    ) -> AsyncIterator[bytes]:
        """Run the loop starting from an already opened backend stream.

        Yields every passthrough chunk of every iteration plus any warning or
        error chunk. Closing this iterator early cancels the loop.
        """
        if not self.user_query:
            self.user_query = latest_user_query(messages)

        channel = StreamChannel()
        task = asyncio.create_task(
            self._run_loop(channel, initial_reader, messages, generate_args, generate_kwargs)
        )
        try:
            async for chunk in channel:
                yield chunk
        finally:
            await _cancel_task(task)

    async def _run_loop(
        self,
        channel: StreamChannel,
        reader: ByteReader,
        messages: list[dict[str, Any]],
        generate_args: tuple[Any, ...],
        generate_kwargs: dict[str, Any],
    ) -> None:
        # Runs in its own task, so the binding only tags this loop's log lines.
        bind_contextvars(loop_id=uuid.uuid4().hex[:12])
        state = AgentLoopState()
        current_reader = reader
        try:
            while True:
                state.iteration += 1
                log.info("Agent iteration started", iteration=state.iteration)
                if self.config.on_iteration_start:
                    self.config.on_iteration_start(state.iteration)

                if state.iteration > self.config.max_iterations:
                    log.warning("Max iterations reached, stopping", max_iterations=self.config.max_iterations)
                    await _close_reader(current_reader)
                    await channel.send(self._encode_notice(
                        MAX_ITERATIONS_WARNING.format(max_iterations=self.config.max_iterations)
                    ))
                    break

                result = await self.stream_processor.process_stream(current_reader, channel)
                tool_calls = result.tool_calls
                log.info("Stream processed", iteration=state.iteration, tool_calls=len(tool_calls))

                if not tool_calls:
                    state.is_complete = True
                    if self.config.on_iteration_complete:
                        self.config.on_iteration_complete(state.iteration, False)
                    break

                tool_results = await self.execute_tools(tool_calls)
                tool_results = await self.summarize_tool_results(tool_results, messages)

                formatted = self.stream_processor.format_tool_results_for_next_call(tool_results)

                if self.compressor is not None and should_compress(
                    estimate_tokens(messages) + estimate_tokens(formatted), self.max_tokens
                ):
                    compressed = await self.compressor.compress_history(messages)
                    messages[:] = [compressed]
                    await channel.send(self._encode_notice(COMPRESSION_WARNING_MSG))

                messages.extend(formatted)
                state.total_tokens_estimate = estimate_tokens(messages)
                log.info(
                    "Tool results added to history",
                    messages_added=len(formatted),
                    tokens_estimate=state.total_tokens_estimate,
                )

                current_reader = await self.generate(messages, *generate_args, **generate_kwargs)

                log.info("Agent iteration complete", iteration=state.iteration)
                if self.config.on_iteration_complete:
                    self.config.on_iteration_complete(state.iteration, True)
        except asyncio.CancelledError:
            await _close_reader(current_reader)
            raise
        except Exception as e:
            state.last_error = e
            log.error("Agent loop failed", iteration=state.iteration, error=str(e))
            await channel.send(self._encode_notice(ERROR_MESSAGE.format(message=e)))
        finally:
            channel.close()

    async def execute_tools(self, tool_calls: list[ExtractedToolCall]) -> list[ToolExecutionResult]:
        """Execute calls one at a time, in call order.

        Failures and timeouts become ``{"error": message}`` results.
        """
        results: list[ToolExecutionResult] = []
        for call in tool_calls:
            started = time.perf_counter()
            log.info("Executing tool", tool=call.name, call_id=call.id)
            if self.config.on_tool_execution:
                self.config.on_tool_execution(call.name, call.arguments)

            try:
                tool = self.registry.get(call.name)
                arguments = parse_tool_arguments(call.name, call.arguments)
                tool.validate_arguments(arguments)
                value = await self._execute_with_timeout(tool, arguments)
                log.info(
                    "Tool completed",
                    tool=call.name,
                    elapsed_ms=round((time.perf_counter() - started) * 1000, 1),
                )
            except Exception as e:
                log.warning(
                    "Tool failed",
                    tool=call.name,
                    error=str(e),
                    elapsed_ms=round((time.perf_counter() - started) * 1000, 1),
                )
                value = {"error": str(e)}

            results.append(ToolExecutionResult(
                tool_call_id=call.id,
                tool_name=call.name,
                arguments=call.arguments,
                result=value,
                execution_time_ms=(time.perf_counter() - started) * 1000,
            ))
        return results

    async def _execute_with_timeout(self, tool: Tool, arguments: dict[str, Any]) -> Any:
        timeout_seconds = self.config.tool_execution_timeout
        task = asyncio.create_task(tool.execute(**arguments))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout_seconds)
        except asyncio.CancelledError:
            await _cancel_task(task)
            raise
        if task in done:
            return task.result()
        await _cancel_task(task)
        raise ToolTimeoutError(tool.name, timeout_seconds)

    async def summarize_tool_results(
        self,
        tool_results: list[ToolExecutionResult],
        messages: list[dict[str, Any]],
    ) -> list[ToolExecutionResult]:
        """Shrink oversized results when adding them would cross the budget."""
        if not self.config.enable_tool_result_summarization:
            return tool_results

        current_tokens = estimate_tokens(messages)
        results_tokens = estimate_tokens([r.to_dict() for r in tool_results])
        total = current_tokens + results_tokens
        if not should_compress(total, self.max_tokens):
            return tool_results

        log.info(
            "Context would exceed limit, summarizing tool results",
            current_tokens=current_tokens,
            tool_results_tokens=results_tokens,
            total=total,
            limit=int(compression_limit(self.max_tokens)),
        )

        summarized: list[ToolExecutionResult] = []
        for r in tool_results:
            result_text = to_json(r.result)
            original_size = len(result_text)
            if original_size <= OVERSIZED_RESULT_CHARS:
                summarized.append(r)
                continue
            try:
                summary = await self._extract_relevant_info(r.tool_name, r.arguments, result_text)
                summarized.append(replace(r, result={"summary": summary, "_original_size": original_size}))
            except Exception as e:
                log.warning("Summarization failed, truncating", tool=r.tool_name, error=str(e))
                summarized.append(replace(r, result={
                    "truncated": result_text[:OVERSIZED_RESULT_CHARS],
                    "_original_size": original_size,
                    "_summarization_failed": True,
                }))
        return summarized

    async def _extract_relevant_info(self, tool_name: str, tool_arguments: str, tool_result: str) -> str:
        if self.provider is None:
            raise LLMError("No provider configured for summarization")
        prompt = self.instructions.extraction_prompt(
            user_query=self.user_query,
            tool_name=tool_name,
            tool_arguments=tool_arguments,
            tool_result=tool_result[:SUMMARY_INPUT_CHARS],
        )
        response = await self.provider.complete(
            messages=[Message(role="user", content=prompt)],
            max_tokens=SUMMARY_MAX_TOKENS,
            temperature=0,
        )
        return response.content or tool_result[:OVERSIZED_RESULT_CHARS]
