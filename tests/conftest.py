# tests/conftest.py
import asyncio

import pytest
from fastapi.testclient import TestClient

from api.app import create_app
from core.config import Settings
from core.exceptions import ConfigurationError, TerminalProviderError, TransientProviderError, TransportError
from core.retry import RetryPolicy
from llm.provider import ProviderAdapter


def overloaded(model="primary-model"):
    return TransientProviderError("model overloaded", model=model, status_code=503, reason="overloaded")


def rate_limited(model="primary-model"):
    return TransientProviderError("quota exceeded", model=model, status_code=429, reason="rate_limited")


def rejected(model="primary-model"):
    return TerminalProviderError("API key not valid", model=model, status_code=400, reason="rejected")


def network_down(model="primary-model"):
    return TransportError("Connection reset", model=model, reason="transport")


class FakeAdapter(ProviderAdapter):
    """
    Scripted adapter. Each complete() / open_stream() call consumes the next
    outcome; the last outcome repeats once the script runs out.

    complete outcomes: str (returned) or Exception (raised).
    stream outcomes: Exception (raised on open) or a list whose items are
    str (yielded) or Exception (raised mid-stream).
    """

    def __init__(self, model, complete=None, stream=None):
        super().__init__(model)
        self.complete_script = list(complete or ["ok"])
        self.stream_script = list(stream or [["ok"]])
        self.calls = 0
        self.stream_calls = 0
        self.closed_streams = 0
        self.prompts = []

    @staticmethod
    def _next(script):
        return script.pop(0) if len(script) > 1 else script[0]

    async def complete(self, system_instruction, user_prompt):
        self.calls += 1
        self.prompts.append((system_instruction, user_prompt))
        outcome = self._next(self.complete_script)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def open_stream(self, system_instruction, user_prompt):
        self.stream_calls += 1
        self.prompts.append((system_instruction, user_prompt))
        outcome = self._next(self.stream_script)
        if isinstance(outcome, Exception):
            raise outcome
        return self._chunks(list(outcome))

    async def _chunks(self, items):
        try:
            for item in items:
                await asyncio.sleep(0)
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            self.closed_streams += 1


class FakeProvider:
    """Stands in for llm.provider.ProviderClient."""

    def __init__(self, *adapters, ready=True):
        self.adapters = {a.model: a for a in adapters}
        self.is_ready = ready
        self.closed = False

    def ensure_ready(self):
        if not self.is_ready:
            raise ConfigurationError("LLM provider key not configured. Set GEMINI_API_KEY.")

    def adapter(self, model):
        self.ensure_ready()
        return self.adapters[model]

    async def close(self):
        self.closed = True


@pytest.fixture
def fast_policy():
    return RetryPolicy(max_attempts=2, base_delay=0, jitter_max=0)


@pytest.fixture
def settings(fast_policy):
    return Settings(
        api_key="test-key",
        default_model="primary-model",
        fallback_model="fallback-model",
        retry=fast_policy,
    )


@pytest.fixture
def make_client(settings):
    """Build a TestClient around a FakeProvider; lifespan runs on enter."""
    clients = []

    def _make(*adapters, ready=True, app_settings=None):
        provider = FakeProvider(*adapters, ready=ready)
        client = TestClient(create_app(settings=app_settings or settings, provider=provider))
        client.__enter__()
        clients.append(client)
        return client, provider

    yield _make

    for client in clients:
        client.__exit__(None, None, None)
