# llm/fallback.py
"""
Primary/fallback model orchestration on top of core.retry.

One call to generate() or open_stream() owns one logical generation:
the primary is retried under the policy; a transient final failure switches
to the fallback model with a fresh attempt budget; a terminal failure is
propagated untouched.
"""
import logging
from typing import AsyncIterator, Optional

from core.config import ModelSelection
from core.exceptions import FallbackExhaustedError, ProviderError
from core.metrics import record_fallback
from core.request_context import get_request_id
from core.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)


class FallbackOrchestrator:
    """
    Runs a generation against the primary model, falling back on overload.

    `provider` is anything exposing `adapter(model) -> ProviderAdapter`
    (normally llm.provider.ProviderClient).
    """

    def __init__(self, provider, policy: Optional[RetryPolicy] = None, sleep=None):
        self.provider = provider
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def ensure_ready(self) -> None:
        ensure = getattr(self.provider, "ensure_ready", None)
        if ensure is not None:
            ensure()

    async def _with_retry(self, func, model: str):
        kwargs = {"policy": self.policy, "request_id": get_request_id(), "label": model}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        return await retry_async(func, **kwargs)

    def _should_fall_back(self, exc: BaseException, selection: ModelSelection) -> bool:
        return isinstance(exc, ProviderError) and exc.is_transient and selection.has_fallback

    def _log_fallback(self, exc: ProviderError, selection: ModelSelection, stage: str) -> None:
        record_fallback(selection.primary, selection.fallback)
        logger.warning("Primary model failed, switching to fallback", extra={
            "event": "llm_fallback",
            "stage": stage,
            "primary": selection.primary,
            "fallback": selection.fallback,
            "reason": exc.reason,
            "status": exc.status_code,
            "request_id": get_request_id(),
        })

    async def generate(self, system_instruction: str, user_prompt: str, selection: ModelSelection) -> str:
        """Non-streaming generation with retry and fallback."""
        self.ensure_ready()
        primary = self.provider.adapter(selection.primary)
        try:
            return await self._with_retry(
                lambda: primary.complete(system_instruction, user_prompt), selection.primary
            )
        except ProviderError as exc:
            if not self._should_fall_back(exc, selection):
                raise
            primary_error = exc
            self._log_fallback(exc, selection, stage="complete")

        fallback = self.provider.adapter(selection.fallback)
        try:
            return await self._with_retry(
                lambda: fallback.complete(system_instruction, user_prompt), selection.fallback
            )
        except ProviderError as exc:
            raise FallbackExhaustedError(exc, primary_error) from exc

    async def _open(self, model: str, system_instruction: str, user_prompt: str) -> AsyncIterator[str]:
        adapter = self.provider.adapter(model)
        return await self._with_retry(lambda: adapter.open_stream(system_instruction, user_prompt), model)

    async def open_stream(
        self, system_instruction: str, user_prompt: str, selection: ModelSelection
    ) -> "FallbackStream":
        """
        Open a stream on the primary (or, after transient exhaustion, the fallback).

        Raises if no stream could be opened; the caller then reports a
        synchronous error instead of opening its event channel.
        """
        self.ensure_ready()
        try:
            chunks = await self._open(selection.primary, system_instruction, user_prompt)
            return FallbackStream(self, chunks, selection, system_instruction, user_prompt)
        except ProviderError as exc:
            if not self._should_fall_back(exc, selection):
                raise
            primary_error = exc
            self._log_fallback(exc, selection, stage="open")

        try:
            chunks = await self._open(selection.fallback, system_instruction, user_prompt)
        except ProviderError as exc:
            raise FallbackExhaustedError(exc, primary_error) from exc
        return FallbackStream(
            self, chunks, selection, system_instruction, user_prompt, primary_error=primary_error
        )


class FallbackStream:
    """
    Text chunks from the active model.

    A transient failure before the first chunk switches to the fallback
    model; after the first chunk, failures propagate so the consumer never
    sees duplicated partial output.
    """

    def __init__(
        self,
        orchestrator: FallbackOrchestrator,
        chunks: AsyncIterator[str],
        selection: ModelSelection,
        system_instruction: str,
        user_prompt: str,
        *,
        primary_error: Optional[ProviderError] = None,
    ):
        self._orchestrator = orchestrator
        self._chunks = chunks
        self._selection = selection
        self._system_instruction = system_instruction
        self._user_prompt = user_prompt
        self.primary_error = primary_error
        self.on_fallback = primary_error is not None
        self.emitted = False

    @property
    def model(self) -> str:
        return self._selection.fallback if self.on_fallback else self._selection.primary

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        while True:
            try:
                async for text in self._chunks:
                    self.emitted = True
                    yield text
                return
            except ProviderError as exc:
                if self.on_fallback:
                    raise FallbackExhaustedError(exc, self.primary_error) from exc
                if self.emitted or not self._orchestrator._should_fall_back(exc, self._selection):
                    raise
                self.primary_error = exc

            await self._close_chunks()
            self._orchestrator._log_fallback(self.primary_error, self._selection, stage="first_chunk")
            try:
                self._chunks = await self._orchestrator._open(
                    self._selection.fallback, self._system_instruction, self._user_prompt
                )
            except ProviderError as exc:
                raise FallbackExhaustedError(exc, self.primary_error) from exc
            self.on_fallback = True

    async def _close_chunks(self) -> None:
        close = getattr(self._chunks, "aclose", None)
        if close is not None:
            await close()

    async def aclose(self) -> None:
        """Release the underlying provider stream."""
        await self._close_chunks()
