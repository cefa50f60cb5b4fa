# streaming/server.py
import asyncio
import logging
import time
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional

import anyio

from core.exceptions import DiagramServiceError, StreamProtocolError, retry_message
from core.metrics import (
    record_stream_cancelled,
    record_stream_failure,
    record_stream_start,
    record_stream_success,
)
from core.request_context import get_request_id
from streaming.protocol import Chunk, Done, Error, StreamEvent, encode_event

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class ChannelState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    TERMINATED = "terminated"


class EventChannel:
    """
    Enforces the frame order of one stream: Idle -> Streaming -> Terminated.

    Any number of chunks, then exactly one done or error. Nothing after that.
    """

    def __init__(self):
        self.state = ChannelState.IDLE
        self._parts: List[str] = []

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def _check_open(self) -> None:
        if self.state is ChannelState.TERMINATED:
            raise StreamProtocolError("event channel already terminated")

    def chunk(self, text: str) -> Chunk:
        self._check_open()
        self.state = ChannelState.STREAMING
        self._parts.append(text)
        return Chunk(text)

    def done(self) -> Done:
        self._check_open()
        self.state = ChannelState.TERMINATED
        return Done(self.text)

    def error(self, message: str) -> Error:
        self._check_open()
        self.state = ChannelState.TERMINATED
        return Error(message)


def error_message(exc: BaseException) -> str:
    if isinstance(exc, DiagramServiceError) and exc.is_transient:
        return f"{retry_message(exc)}. ({exc})"
    return str(exc) or type(exc).__name__


async def stream_events(
    chunks: AsyncIterator[str],
    *,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    close: Optional[Callable[[], Awaitable[None]]] = None,
) -> AsyncIterator[StreamEvent]:
    """
    Turn provider text chunks into protocol events for one generation.

    Args:
        chunks: Async iterator of text (normally an llm.fallback.FallbackStream).
        is_disconnected: Polled between chunks; when it reports True the
                         provider stream is released and no further frames are produced.
        close: Releases the provider stream; always awaited on exit.
    """
    channel = EventChannel()
    request_id = get_request_id()
    start = time.monotonic()
    record_stream_start()

    try:
        try:
            async for text in chunks:
                if is_disconnected is not None and await is_disconnected():
                    record_stream_cancelled()
                    logger.info("Client disconnected, abandoning stream", extra={
                        "event": "stream_abandoned",
                        "request_id": request_id,
                        "chars_sent": len(channel.text),
                    })
                    return
                yield channel.chunk(text)
        except asyncio.CancelledError:
            record_stream_cancelled()
            raise
        except Exception as exc:
            # The channel is already open: report in-band instead of dropping the connection
            logger.warning("Stream failed", extra={
                "event": "stream_failed",
                "request_id": request_id,
                "error_type": type(exc).__name__,
                "error_message": str(exc),
                "chars_sent": len(channel.text),
            })
            record_stream_failure()
            yield channel.error(error_message(exc))
            return

        record_stream_success(time.monotonic() - start)
        logger.info("Stream completed", extra={
            "event": "stream_completed",
            "request_id": request_id,
            "chars_sent": len(channel.text),
            "latency_sec": round(time.monotonic() - start, 3),
        })
        yield channel.done()
    finally:
        if close is not None:
            # Runs inside an already-cancelled scope when the client went away
            with anyio.CancelScope(shield=True):
                await close()


async def encode_events(events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield encode_event(event)
