# llm/provider.py
"""
Provider adapters: one adapter wraps one named model.

Provider errors are classified here, once, into the taxonomy in
core.exceptions. Nothing downstream inspects raw SDK error shapes.
"""
import time
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, List, Optional

import httpx
import openai
from openai import AsyncOpenAI

from core.config import Settings
from core.exceptions import (
    ConfigurationError,
    ProviderError,
    TerminalProviderError,
    TransientProviderError,
    TransportError,
)
from core.metrics import record_llm_failure, record_llm_success

logger = logging.getLogger(__name__)

RATE_LIMITED_STATUSES = frozenset({429})
OVERLOADED_STATUSES = frozenset({500, 502, 503, 504, 529})


def classify_provider_error(exc: BaseException, model: Optional[str] = None) -> ProviderError:
    """Map an SDK or transport exception onto the error taxonomy."""
    if isinstance(exc, ProviderError):
        return exc

    # APITimeoutError is a subclass of APIConnectionError
    if isinstance(exc, openai.APIConnectionError):
        return TransportError(str(exc), model=model, reason="transport")

    if isinstance(exc, httpx.TransportError):
        return TransportError(f"{type(exc).__name__}: {exc}", model=model, reason="transport")

    if isinstance(exc, openai.APIStatusError):
        status = exc.status_code
        if status in RATE_LIMITED_STATUSES:
            return TransientProviderError(exc.message, model=model, status_code=status, reason="rate_limited")
        if status in OVERLOADED_STATUSES:
            return TransientProviderError(exc.message, model=model, status_code=status, reason="overloaded")
        return TerminalProviderError(exc.message, model=model, status_code=status, reason="rejected")

    return TerminalProviderError(str(exc) or type(exc).__name__, model=model, reason="provider_error")


def build_messages(system_instruction: str, user_prompt: str) -> List[dict]:
    messages = []
    if system_instruction:
        messages.append({"role": "system", "content": system_instruction})
    messages.append({"role": "user", "content": user_prompt})
    return messages


# ----------------------------------------------------------------------
# Unified interface contract
# ----------------------------------------------------------------------
class ProviderAdapter(ABC):
    """Abstract adapter around a single named model."""

    def __init__(self, model: str):
        self.model = model

    @abstractmethod
    async def complete(self, system_instruction: str, user_prompt: str) -> str:
        """Generate a complete response (non-streaming)."""

    @abstractmethod
    async def open_stream(self, system_instruction: str, user_prompt: str) -> AsyncIterator[str]:
        """
        Send a streaming request and return an async iterator of text chunks.

        Failures to open the stream are raised from this coroutine, so the
        caller can retry the opening without ever re-iterating a stream.
        """

    async def stream(self, system_instruction: str, user_prompt: str) -> AsyncIterator[str]:
        """Stream a response chunk by chunk."""
        chunks = await self.open_stream(system_instruction, user_prompt)
        try:
            async for chunk in chunks:
                yield chunk
        finally:
            close = getattr(chunks, "aclose", None)
            if close is not None:
                await close()


class OpenAICompatibleAdapter(ProviderAdapter):
    """Adapter for any OpenAI-compatible chat completions endpoint (Gemini by default)."""

    def __init__(self, client: AsyncOpenAI, model: str, *, temperature: float = 0.2, timeout: float = 60.0):
        super().__init__(model)
        self.client = client
        self.temperature = temperature
        self.timeout = timeout

    async def complete(self, system_instruction: str, user_prompt: str) -> str:
        start = time.monotonic()
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=build_messages(system_instruction, user_prompt),
                temperature=self.temperature,
                timeout=self.timeout,
            )
        except (openai.APIError, httpx.TransportError) as exc:
            record_llm_failure(self.model)
            raise classify_provider_error(exc, self.model) from exc

        if not getattr(response, "choices", None):
            record_llm_failure(self.model)
            raise TerminalProviderError("Malformed response: missing choices", model=self.model, reason="malformed")

        content = response.choices[0].message.content
        if not content:
            record_llm_failure(self.model)
            raise TerminalProviderError("Empty completion", model=self.model, reason="empty")

        latency = time.monotonic() - start
        record_llm_success(self.model, latency)

        usage = getattr(response, "usage", None)
        logger.info("LLM completion succeeded", extra={
            "model": self.model,
            "latency_sec": round(latency, 3),
            "prompt_tokens": getattr(usage, "prompt_tokens", None),
            "completion_tokens": getattr(usage, "completion_tokens", None),
        })
        return content

    async def open_stream(self, system_instruction: str, user_prompt: str) -> AsyncIterator[str]:
        try:
            stream = await self.client.chat.completions.create(
                model=self.model,
                messages=build_messages(system_instruction, user_prompt),
                temperature=self.temperature,
                timeout=self.timeout,
                stream=True,
            )
        except (openai.APIError, httpx.TransportError) as exc:
            record_llm_failure(self.model)
            raise classify_provider_error(exc, self.model) from exc
        return self._iter_stream(stream)

    async def _iter_stream(self, stream) -> AsyncIterator[str]:
        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                text = getattr(delta, "content", None) if delta is not None else None
                if text:
                    yield text
        except (openai.APIError, httpx.TransportError) as exc:
            raise classify_provider_error(exc, self.model) from exc
        finally:
            await stream.close()


class ProviderClient:
    """
    Process-wide provider handle: credential, endpoint and the SDK client.

    Created once at startup and injected into handlers; read-only afterwards.
    """

    def __init__(
        self,
        api_key: Optional[str],
        *,
        base_url: Optional[str] = None,
        temperature: float = 0.2,
        timeout: float = 60.0,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.temperature = temperature
        self.timeout = timeout
        self._client = client
        if self._client is None and api_key:
            # Retries are owned by core.retry, not by the SDK
            self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderClient":
        return cls(
            settings.api_key,
            base_url=settings.base_url,
            temperature=settings.temperature,
            timeout=settings.request_timeout,
        )

    @property
    def is_ready(self) -> bool:
        return self._client is not None

    def ensure_ready(self) -> None:
        if not self.is_ready:
            raise ConfigurationError("LLM provider key not configured. Set GEMINI_API_KEY.")

    def adapter(self, model: str) -> ProviderAdapter:
        self.ensure_ready()
        return OpenAICompatibleAdapter(self._client, model, temperature=self.temperature, timeout=self.timeout)

    async def close(self) -> None:
        """Close the underlying SDK client if one was created."""
        if self._client is None:
            return
        await self._client.close()
        logger.info("Provider client closed")
