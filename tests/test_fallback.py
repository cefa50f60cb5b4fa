import pytest

from core.config import ModelSelection
from core.exceptions import FallbackExhaustedError, TerminalProviderError, TransientProviderError
from core.retry import RetryPolicy
from llm.fallback import FallbackOrchestrator
from conftest import FakeAdapter, FakeProvider, network_down, overloaded, rate_limited, rejected

SELECTION = ModelSelection(primary="primary-model", fallback="fallback-model")


async def no_sleep(delay):
    return None


def orchestrator(primary, fallback, max_attempts=2):
    provider = FakeProvider(primary, fallback)
    return FallbackOrchestrator(provider, RetryPolicy(max_attempts=max_attempts), sleep=no_sleep)


async def collect(stream):
    return [chunk async for chunk in stream]


@pytest.mark.asyncio
async def test_primary_recovers_after_one_503():
    primary = FakeAdapter("primary-model", complete=[overloaded(), "flowchart TD\nA[Start] --> B[Validate]"])
    fallback = FakeAdapter("fallback-model", complete=["fallback text"])

    text = await orchestrator(primary, fallback, max_attempts=3).generate(
        "sys", "Start -> Validate -> Save -> End", SELECTION
    )

    assert text.startswith("flowchart TD")
    assert primary.calls == 2
    assert fallback.calls == 0


@pytest.mark.asyncio
async def test_rate_limited_primary_falls_back_once():
    primary = FakeAdapter("primary-model", complete=[rate_limited()])
    fallback = FakeAdapter("fallback-model", complete=["fallback text"])

    text = await orchestrator(primary, fallback, max_attempts=2).generate("sys", "prompt", SELECTION)

    assert text == "fallback text"
    assert primary.calls == 2
    assert fallback.calls == 1


@pytest.mark.asyncio
async def test_transport_failure_is_eligible_for_fallback():
    primary = FakeAdapter("primary-model", complete=[network_down()])
    fallback = FakeAdapter("fallback-model", complete=["from fallback"])

    assert await orchestrator(primary, fallback).generate("sys", "prompt", SELECTION) == "from fallback"


@pytest.mark.asyncio
async def test_terminal_primary_error_never_reaches_fallback():
    primary = FakeAdapter("primary-model", complete=[rejected()])
    fallback = FakeAdapter("fallback-model", complete=["unused"])

    with pytest.raises(TerminalProviderError) as exc_info:
        await orchestrator(primary, fallback, max_attempts=3).generate("sys", "prompt", SELECTION)

    assert exc_info.value.status_code == 400
    assert primary.calls == 1
    assert fallback.calls == 0


@pytest.mark.asyncio
async def test_no_fallback_configured_propagates_primary_error():
    primary = FakeAdapter("primary-model", complete=[overloaded()])
    orch = FallbackOrchestrator(FakeProvider(primary), RetryPolicy(max_attempts=2), sleep=no_sleep)

    with pytest.raises(TransientProviderError) as exc_info:
        await orch.generate("sys", "prompt", ModelSelection(primary="primary-model", fallback=None))

    assert not isinstance(exc_info.value, FallbackExhaustedError)
    assert primary.calls == 2


@pytest.mark.asyncio
async def test_fallback_equal_to_primary_is_ignored():
    primary = FakeAdapter("primary-model", complete=[overloaded()])
    orch = FallbackOrchestrator(FakeProvider(primary), RetryPolicy(max_attempts=2), sleep=no_sleep)

    with pytest.raises(TransientProviderError):
        await orch.generate("sys", "prompt", ModelSelection(primary="primary-model", fallback="primary-model"))

    assert primary.calls == 2


@pytest.mark.asyncio
async def test_fallback_failure_is_tagged_exhausted():
    primary = FakeAdapter("primary-model", complete=[overloaded("primary-model")])
    fallback = FakeAdapter("fallback-model", complete=[rate_limited("fallback-model")])

    with pytest.raises(FallbackExhaustedError) as exc_info:
        await orchestrator(primary, fallback, max_attempts=2).generate("sys", "prompt", SELECTION)

    err = exc_info.value
    assert err.is_transient
    assert err.reason == "rate_limited"
    assert err.primary_error.reason == "overloaded"
    assert primary.calls == 2
    assert fallback.calls == 2


@pytest.mark.asyncio
async def test_stream_opens_on_primary():
    primary = FakeAdapter("primary-model", stream=[["flow", "chart"]])
    fallback = FakeAdapter("fallback-model")

    stream = await orchestrator(primary, fallback).open_stream("sys", "prompt", SELECTION)

    assert await collect(stream) == ["flow", "chart"]
    assert stream.model == "primary-model"
    assert fallback.stream_calls == 0


@pytest.mark.asyncio
async def test_stream_open_falls_back_after_transient_exhaustion():
    primary = FakeAdapter("primary-model", stream=[overloaded()])
    fallback = FakeAdapter("fallback-model", stream=[["backup"]])

    stream = await orchestrator(primary, fallback, max_attempts=2).open_stream("sys", "prompt", SELECTION)

    assert await collect(stream) == ["backup"]
    assert stream.on_fallback
    assert primary.stream_calls == 2
    assert fallback.stream_calls == 1


@pytest.mark.asyncio
async def test_stream_open_terminal_error_raises_without_fallback():
    primary = FakeAdapter("primary-model", stream=[rejected()])
    fallback = FakeAdapter("fallback-model", stream=[["unused"]])

    with pytest.raises(TerminalProviderError):
        await orchestrator(primary, fallback).open_stream("sys", "prompt", SELECTION)

    assert fallback.stream_calls == 0


@pytest.mark.asyncio
async def test_stream_failure_before_first_chunk_switches_model():
    primary = FakeAdapter("primary-model", stream=[[overloaded()]])
    fallback = FakeAdapter("fallback-model", stream=[["A", "B"]])

    stream = await orchestrator(primary, fallback).open_stream("sys", "prompt", SELECTION)

    assert await collect(stream) == ["A", "B"]
    assert stream.model == "fallback-model"
    assert primary.closed_streams == 1


@pytest.mark.asyncio
async def test_stream_failure_after_first_chunk_is_not_masked():
    primary = FakeAdapter("primary-model", stream=[["A", overloaded()]])
    fallback = FakeAdapter("fallback-model", stream=[["X"]])

    stream = await orchestrator(primary, fallback).open_stream("sys", "prompt", SELECTION)
    received = []
    with pytest.raises(TransientProviderError):
        async for chunk in stream:
            received.append(chunk)

    assert received == ["A"]
    assert fallback.stream_calls == 0


@pytest.mark.asyncio
async def test_stream_fallback_failure_mid_stream_is_exhausted():
    primary = FakeAdapter("primary-model", stream=[overloaded()])
    fallback = FakeAdapter("fallback-model", stream=[["X", network_down("fallback-model")]])

    stream = await orchestrator(primary, fallback).open_stream("sys", "prompt", SELECTION)
    with pytest.raises(FallbackExhaustedError) as exc_info:
        await collect(stream)

    assert exc_info.value.primary_error.reason == "overloaded"


@pytest.mark.asyncio
async def test_aclose_releases_provider_stream():
    primary = FakeAdapter("primary-model", stream=[["A", "B", "C"]])
    stream = await orchestrator(primary, FakeAdapter("fallback-model")).open_stream("sys", "prompt", SELECTION)

    iterator = stream.__aiter__()
    assert await iterator.__anext__() == "A"
    await stream.aclose()

    assert primary.closed_streams == 1
