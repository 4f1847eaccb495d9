"""OpenAI-compatible provider - direct HTTP calls via httpx."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

from toolstream.exceptions import LLMAPIError, LLMError
from toolstream.logging import get_logger
from toolstream.tokens import estimate_tokens_from_string

log = get_logger(__name__)


OPENAI_BASE_URL = "https://api.openai.com/v1"


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str | None
    tool_call_id: str | None = None
    tool_calls: list[dict[str, Any]] | None = None

    def to_dict(self) -> dict[str, Any]:
        entry: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_call_id:
            entry["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            entry["tool_calls"] = self.tool_calls
        return entry


@dataclass
class LLMResponse:
    """Response from the LLM."""

    content: str
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    finish_reason: str | None = None


def _as_dict(message: Message | dict[str, Any]) -> dict[str, Any]:
    if isinstance(message, Message):
        return message.to_dict()
    return dict(message)


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message | dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        pass

    @abstractmethod
    def stream_chat(
        self,
        messages: list[Message | dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[bytes]:
        pass

    def count_tokens(self, text: str) -> int:
        """Count tokens (chars/4 estimate)."""
        return estimate_tokens_from_string(text)


class OpenAICompatibleProvider(LLMProvider):
    """Provider for any backend speaking the OpenAI HTTP dialect."""

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        base_url: str = OPENAI_BASE_URL,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize provider.

        Args:
            model: Model name sent in every request body
            base_url: API base URL (without the endpoint path)
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            api_key: Bearer token, omitted from headers when empty
            client: Optional preconfigured httpx client
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key

        self.client = client or httpx.AsyncClient(
            timeout=120.0,
            follow_redirects=True,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _chat_body(
        self,
        messages: list[Message | dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        temperature: float | None,
        max_tokens: int | None,
        stream: bool,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": [_as_dict(m) for m in messages],
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.max_tokens,
            "stream": stream,
        }
        if tools:
            body["tools"] = tools
        return body

    async def complete(
        self,
        messages: list[Message | dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a non-streaming completion."""
        url = f"{self.base_url}/chat/completions"
        body = self._chat_body(messages, tools, temperature, max_tokens, stream=False)

        try:
            log.debug("Calling chat completions", model=self.model, url=url, msg_count=len(body["messages"]))
            response = await self.client.post(url, json=body, headers=self._headers())
            log.debug("Chat completions response status", status=response.status_code)

            if not response.is_success:
                raise LLMAPIError(
                    f"API error {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )

            data = response.json()
            choice = (data.get("choices") or [{}])[0]
            return LLMResponse(
                content=(choice.get("message") or {}).get("content") or "",
                model=data.get("model", self.model),
                usage=data.get("usage") or {},
                finish_reason=choice.get("finish_reason"),
            )
        except LLMAPIError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"HTTP error: {e}")
        except (json.JSONDecodeError, ValueError) as e:
            raise LLMError(f"Response decode error: {e}")

    async def stream_chat(
        self,
        messages: list[Message | dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[bytes]:
        """Stream chat completion deltas, one JSON object per chunk."""
        url = f"{self.base_url}/chat/completions"
        body = self._chat_body(messages, tools, temperature, max_tokens, stream=True)

        try:
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    payload = line[5:].strip()
                    if not payload or payload == "[DONE]":
                        continue
                    yield (payload + "\n").encode("utf-8")
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Streaming error: {e}")

    async def stream_responses(
        self,
        input_items: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        instructions: str | None = None,
    ) -> AsyncIterator[bytes]:
        """Stream raw Server-Sent Events from the Responses endpoint."""
        url = f"{self.base_url}/responses"
        body: dict[str, Any] = {
            "model": self.model,
            "input": input_items,
            "stream": True,
        }
        if instructions:
            body["instructions"] = instructions
        if tools:
            body["tools"] = tools

        try:
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )
                async for chunk in response.aiter_bytes():
                    if chunk:
                        yield chunk
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Streaming error: {e}")

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    provider: str = "openai",
    model: str = "gpt-4o-mini",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 4096,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (openai, openrouter, openwebui, compatible)
        model: Model name
        api_key: Optional API key
        base_url: Optional base URL
        temperature: Default temperature
        max_tokens: Default max tokens

    Returns:
        Configured LLMProvider instance
    """
    name = (provider or "").strip().lower()
    if name not in {"openai", "openrouter", "openwebui", "compatible"}:
        raise ValueError(f"Provider '{provider}' not supported.")
    return OpenAICompatibleProvider(
        model=model,
        base_url=base_url or OPENAI_BASE_URL,
        temperature=temperature,
        max_tokens=max_tokens,
        api_key=api_key,
    )


# Global provider instance
_provider: LLMProvider | None = None


def get_provider() -> LLMProvider:
    """Get the global LLM provider instance."""
    global _provider
    if _provider is None:
        from toolstream.config import get_config
        cfg = get_config()
        _provider = create_provider(
            provider=cfg.model.provider,
            model=cfg.model.model,
            base_url=cfg.model.base_url or None,
            temperature=cfg.model.temperature,
            max_tokens=cfg.model.max_tokens,
            api_key=cfg.model.api_key or None,
        )
    return _provider


def set_provider(provider: LLMProvider) -> None:
    """Set the global LLM provider instance."""
    global _provider
    _provider = provider
