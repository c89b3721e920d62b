"""
AgentOS - LLM Service

Language model access for the agent runtime. Every agent step is one
completion over the session transcript.

Supports LLM providers:
- Anthropic Claude
- OpenAI GPT
- Local models via Ollama
- A scripted mock for development and tests
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterable

import httpx
import structlog

if TYPE_CHECKING:
    from agentos.config import Settings

logger = structlog.get_logger(__name__)


class LLMProvider(str, Enum):
    """Supported LLM providers."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    OLLAMA = "ollama"
    MOCK = "mock"


@dataclass
class LLMConfig:
    """Configuration for LLM service."""
    provider: LLMProvider = LLMProvider.MOCK
    model: str = "claude-sonnet-4-20250514"
    api_key: str | None = None
    api_base: str | None = None
    max_tokens: int = 2000
    temperature: float = 0.4
    timeout_seconds: float = 60.0
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0

    @classmethod
    def from_settings(cls, settings: Settings) -> LLMConfig:
        return cls(
            provider=LLMProvider(settings.llm_provider),
            model=settings.llm_model,
            api_key=settings.llm_api_key,
            api_base=settings.llm_api_base,
            max_tokens=settings.llm_max_tokens,
            temperature=settings.llm_temperature,
            timeout_seconds=settings.llm_timeout_seconds,
            max_retries=settings.llm_max_retries,
        )


@dataclass
class LLMMessage:
    """A message in a conversation."""
    role: str  # "system", "user", "assistant"
    content: str


@dataclass
class LLMResponse:
    """Response from LLM."""
    content: str
    model: str
    tokens_used: int = 0
    finish_reason: str = "stop"
    latency_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "model": self.model,
            "tokens_used": self.tokens_used,
            "finish_reason": self.finish_reason,
            "latency_ms": self.latency_ms,
        }


class LLMConfigurationError(Exception):
    """Raised when LLM is not properly configured."""
    pass


class LLMProviderBase(ABC):
    """Base class for LLM providers."""

    @abstractmethod
    async def complete(
        self,
        messages: list[LLMMessage],
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        """Generate a completion."""
        pass

    async def close(self) -> None:
        return None


class _HTTPProvider(LLMProviderBase):
    """Shared lazily-created HTTP client for hosted providers."""

    default_base: str = ""

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        api_base: str | None = None,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_key = api_key
        self._model = model
        self._api_base = (api_base or self.default_base).rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def _post(self, url: str, payload: dict[str, Any], headers: dict[str, str]) -> dict:
        response = await self._get_client().post(url, headers=headers, json=payload)
        response.raise_for_status()
        return response.json()


class AnthropicProvider(_HTTPProvider):
    """Anthropic Messages API."""

    default_base = "https://api.anthropic.com"

    async def complete(
        self,
        messages: list[LLMMessage],
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        start_time = time.monotonic()

        system_parts = [m.content for m in messages if m.role == "system"]
        payload: dict[str, Any] = {
            "model": self._model,
            "messages": [
                {"role": m.role, "content": m.content} for m in messages if m.role != "system"
            ],
            "max_tokens": max_tokens or 2000,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        if temperature is not None:
            payload["temperature"] = temperature

        data = await self._post(
            f"{self._api_base}/v1/messages",
            payload,
            {
                "x-api-key": self._api_key or "",
                "anthropic-version": "2023-06-01",
                "Content-Type": "application/json",
            },
        )

        content = "".join(
            block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"
        )
        usage = data.get("usage", {})
        return LLMResponse(
            content=content,
            model=self._model,
            tokens_used=usage.get("input_tokens", 0) + usage.get("output_tokens", 0),
            finish_reason=data.get("stop_reason") or "stop",
            latency_ms=(time.monotonic() - start_time) * 1000,
        )


class OpenAIProvider(_HTTPProvider):
    """OpenAI chat completions API."""

    default_base = "https://api.openai.com/v1"

    async def complete(
        self,
        messages: list[LLMMessage],
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        start_time = time.monotonic()

        payload: dict[str, Any] = {
            "model": self._model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "max_tokens": max_tokens or 2000,
        }
        if temperature is not None:
            payload["temperature"] = temperature

        data = await self._post(
            f"{self._api_base}/chat/completions",
            payload,
            {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"},
        )

        choice = (data.get("choices") or [{}])[0]
        return LLMResponse(
            content=choice.get("message", {}).get("content") or "",
            model=self._model,
            tokens_used=data.get("usage", {}).get("total_tokens", 0),
            finish_reason=choice.get("finish_reason") or "stop",
            latency_ms=(time.monotonic() - start_time) * 1000,
        )


class OllamaProvider(_HTTPProvider):
    """Ollama chat API for local models."""

    default_base = "http://localhost:11434"

    async def complete(
        self,
        messages: list[LLMMessage],
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        start_time = time.monotonic()

        options: dict[str, Any] = {}
        if max_tokens:
            options["num_predict"] = max_tokens
        if temperature is not None:
            options["temperature"] = temperature

        payload: dict[str, Any] = {
            "model": self._model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": False,
        }
        if options:
            payload["options"] = options

        data = await self._post(f"{self._api_base}/api/chat", payload, {})

        return LLMResponse(
            content=data.get("message", {}).get("content", ""),
            model=self._model,
            tokens_used=data.get("eval_count", 0) + data.get("prompt_eval_count", 0),
            finish_reason="stop",
            latency_ms=(time.monotonic() - start_time) * 1000,
        )


class MockLLMProvider(LLMProviderBase):
    """
    Scripted LLM provider for development and tests.

    Replies are taken from the queued responses first, then from the
    responder callable if one is given. With neither, the last user
    message is echoed back.
    """

    def __init__(
        self,
        responses: Iterable[str] | None = None,
        responder: Callable[[list[LLMMessage]], str] | None = None,
    ) -> None:
        self._responses: deque[str] = deque(responses or ())
        self._responder = responder
        self.calls: list[list[LLMMessage]] = []

    def queue_response(self, *responses: str) -> None:
        self._responses.extend(responses)

    async def complete(
        self,
        messages: list[LLMMessage],
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        self.calls.append(list(messages))

        if self._responses:
            content = self._responses.popleft()
        elif self._responder is not None:
            content = self._responder(messages)
        else:
            content = next((m.content for m in reversed(messages) if m.role == "user"), "")

        return LLMResponse(
            content=content,
            model="mock",
            tokens_used=len(content.split()),
            finish_reason="stop",
        )


class LLMService:
    """
    LLM access with retries.

    Usage:
        service = LLMService(LLMConfig(
            provider=LLMProvider.ANTHROPIC,
            api_key="sk-ant-..."
        ))
        response = await service.complete([LLMMessage("user", "hello")])
    """

    def __init__(
        self,
        config: LLMConfig | None = None,
        provider: LLMProviderBase | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._config = config or LLMConfig()
        self._provider = provider or self._create_provider(transport)

        logger.info(
            "llm_service_initialized",
            provider=self._config.provider.value if provider is None else type(provider).__name__,
            model=self._config.model,
        )

    @property
    def provider(self) -> LLMProviderBase:
        return self._provider

    def _create_provider(self, transport: httpx.AsyncBaseTransport | None) -> LLMProviderBase:
        """Create the appropriate provider."""
        config = self._config
        if config.provider in (LLMProvider.ANTHROPIC, LLMProvider.OPENAI):
            if not config.api_key:
                raise LLMConfigurationError(
                    f"API key required for {config.provider.value} provider (set LLM_API_KEY)"
                )
            provider_cls = (
                AnthropicProvider if config.provider == LLMProvider.ANTHROPIC else OpenAIProvider
            )
            return provider_cls(
                model=config.model,
                api_key=config.api_key,
                api_base=config.api_base,
                timeout=config.timeout_seconds,
                transport=transport,
            )

        if config.provider == LLMProvider.OLLAMA:
            return OllamaProvider(
                model=config.model,
                api_base=config.api_base,
                timeout=config.timeout_seconds,
                transport=transport,
            )

        if config.provider == LLMProvider.MOCK:
            logger.warning(
                "mock_llm_provider_initialized",
                hint="Set LLM_PROVIDER and LLM_API_KEY for real agent reasoning.",
            )
            return MockLLMProvider()

        raise LLMConfigurationError(f"Unsupported LLM provider: {config.provider}")

    async def complete(
        self,
        messages: list[LLMMessage],
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        """
        Generate a completion, retrying with exponential backoff.

        Raises:
            The provider's last exception once retries are exhausted
        """
        max_tokens = max_tokens or self._config.max_tokens
        temperature = temperature if temperature is not None else self._config.temperature

        for attempt in range(self._config.max_retries):
            try:
                response = await self._provider.complete(
                    messages=messages,
                    max_tokens=max_tokens,
                    temperature=temperature,
                )
                logger.debug(
                    "llm_completion",
                    model=response.model,
                    tokens=response.tokens_used,
                    latency_ms=round(response.latency_ms, 2),
                )
                return response
            except (httpx.HTTPError, ValueError) as e:
                if attempt == self._config.max_retries - 1:
                    raise
                logger.warning("llm_retry", attempt=attempt + 1, error=str(e))
                await asyncio.sleep(self._config.retry_backoff_seconds * (2 ** attempt))

        raise RuntimeError("LLM completion failed after retries")

    async def close(self) -> None:
        await self._provider.close()
        logger.info("llm_service_closed")


__all__ = [
    "LLMProvider",
    "LLMConfig",
    "LLMConfigurationError",
    "LLMMessage",
    "LLMResponse",
    "LLMProviderBase",
    "AnthropicProvider",
    "OpenAIProvider",
    "OllamaProvider",
    "MockLLMProvider",
    "LLMService",
]
