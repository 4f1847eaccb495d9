"""Condense conversation history when it approaches the context limit."""

from dataclasses import dataclass
from typing import Any

from toolstream.exceptions import CompressionError
from toolstream.instructions import InstructionLoader, get_instructions
from toolstream.llm import LLMProvider, Message
from toolstream.logging import get_logger
from toolstream.tokens import estimate_tokens, should_compress

log = get_logger(__name__)

SUMMARY_HEADER = "[Resumo do contexto anterior]"
COMPRESSION_WARNING_MSG = "⚠️ Contexto comprimido para economizar espaço."
FALLBACK_CHARS = 4000


@dataclass
class CompressionResult:
    """History after a compression check."""

    history: list[dict[str, Any]]
    did_compress: bool


def format_history(history: list[dict[str, Any]]) -> str:
    """Render history entries as ``role: content`` paragraphs."""
    lines = []
    for entry in history:
        role = entry.get("role") or entry.get("type") or "unknown"
        content = entry.get("content")
        if not isinstance(content, str):
            content = entry.get("output") if isinstance(entry.get("output"), str) else ""
        lines.append(f"{role}: {content}")
    return "\n\n".join(lines)


class ContextCompressor:
    """Summarize a whole history into one assistant entry with one backend call."""

    def __init__(
        self,
        provider: LLMProvider,
        max_summary_tokens: int = 2000,
        instructions: InstructionLoader | None = None,
    ):
        self.provider = provider
        self.max_summary_tokens = max_summary_tokens
        self.instructions = instructions or get_instructions()

    async def compress_history(self, history: list[dict[str, Any]]) -> dict[str, Any]:
        """Return a single synthetic assistant entry summarizing ``history``.

        Never raises: an empty reply or a failed call falls back to the first
        4000 characters of the raw history text.
        """
        history_text = format_history(history)
        prompt = self.instructions.compression_prompt(history_text)

        try:
            summary = await self._summarize(prompt)
        except Exception as e:
            log.warning("History compression failed, using raw history", error=str(e))
            summary = history_text[:FALLBACK_CHARS]

        return {"role": "assistant", "content": f"{SUMMARY_HEADER}\n{summary}"}

    async def compress_if_needed(self, history: list[dict[str, Any]], max_tokens: int) -> CompressionResult:
        """Compress only when the history crosses 80% of ``max_tokens``.

        When no compression happens the very same list object is returned.
        """
        history_tokens = estimate_tokens(history)
        if not should_compress(history_tokens, max_tokens):
            return CompressionResult(history=history, did_compress=False)

        log.info(
            "Context exceeds compression threshold, compressing",
            history_tokens=history_tokens,
            max_tokens=max_tokens,
            entries=len(history),
        )
        compressed = await self.compress_history(history)
        return CompressionResult(history=[compressed], did_compress=True)

    async def _summarize(self, prompt: str) -> str:
        response = await self.provider.complete(
            messages=[Message(role="user", content=prompt)],
            max_tokens=self.max_summary_tokens,
            temperature=0,
        )
        summary = (response.content or "").strip()
        if not summary:
            raise CompressionError("Empty summary returned")
        return summary
