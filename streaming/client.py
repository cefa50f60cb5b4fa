# streaming/client.py
"""
Consumer for /api/chat-stream.

    client = ChatStreamClient("http://localhost:3001")
    handle = client.open_stream(history, on_chunk, on_done, on_error)
    ...
    handle()          # or handle.cancel(): abort, no on_error for the abort
    await handle.wait()

Callbacks run on the event loop that called open_stream().
"""
import asyncio
import json
import logging
from typing import Callable, Iterable, List, Optional, Union

import httpx

from core.http_client import get_client
from llm.prompts import ChatMessage
from streaming.protocol import Chunk, DecodeError, Done, Error, SSEDecoder

logger = logging.getLogger(__name__)

CLOSED_EARLY_MESSAGE = "stream closed before completion"

HistoryItem = Union[ChatMessage, dict]


def _history_payload(history: Iterable[HistoryItem]) -> List[dict]:
    payload = []
    for message in history:
        if isinstance(message, ChatMessage):
            payload.append({"role": message.role.value, "content": message.content})
        else:
            payload.append({"role": message["role"], "content": message["content"]})
    return payload


def _error_detail(status_code: int, body: bytes) -> str:
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        text = body.decode("utf-8", errors="replace").strip()
        return f"Server error {status_code}: {text}" if text else f"Server error {status_code}"
    if isinstance(data, dict):
        error = data.get("error")
        detail = data.get("detail")
        if error and detail and detail != error:
            return f"{error}: {detail}"
        if error or detail:
            return str(error or detail)
    return f"Server error {status_code}"


class StreamHandle:
    """Cancellation handle returned by open_stream(). Calling it cancels."""

    def __init__(self):
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    __call__ = cancel

    async def wait(self) -> None:
        """Wait until the stream has finished, failed or been cancelled."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._cancelled:
                raise


class ChatStreamClient:
    def __init__(self, base_url: str = "http://localhost:3001", client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client or get_client()

    def open_stream(
        self,
        history: Iterable[HistoryItem],
        on_chunk: Callable[[str], None],
        on_done: Callable[[str], None],
        on_error: Callable[[str], None],
        *,
        diagram: Optional[str] = None,
        model: Optional[str] = None,
        on_decode_error: Optional[Callable[[DecodeError], None]] = None,
    ) -> StreamHandle:
        """Start streaming one chat reply. Must be called from a running event loop."""
        body = {"messages": _history_payload(history)}
        if diagram is not None:
            body["diagram"] = diagram
        if model:
            body["model"] = model

        handle = StreamHandle()
        handle._task = asyncio.get_running_loop().create_task(
            self._run(handle, body, on_chunk, on_done, on_error, on_decode_error)
        )
        return handle

    async def _run(self, handle, body, on_chunk, on_done, on_error, on_decode_error) -> None:
        decoder = SSEDecoder()
        buffer: List[str] = []

        def dispatch(event) -> bool:
            """Deliver one event; True once the stream has terminated."""
            if isinstance(event, Chunk):
                buffer.append(event.text)
                on_chunk(event.text)
                return False
            if isinstance(event, Done):
                on_done(event.text or "".join(buffer))
                return True
            if isinstance(event, Error):
                on_error(event.message)
                return True
            if on_decode_error is not None:
                on_decode_error(event)
            else:
                logger.warning("Undecodable stream frame", extra={"reason": event.reason, "frame": event.raw[:200]})
            return False

        try:
            async with self.client.stream(
                "POST",
                f"{self.base_url}/api/chat-stream",
                json=body,
                headers={"Accept": "text/event-stream"},
            ) as response:
                if response.status_code >= 400:
                    detail = _error_detail(response.status_code, await response.aread())
                    if not handle.cancelled:
                        on_error(detail)
                    return

                async for raw in response.aiter_bytes():
                    for event in decoder.feed(raw):
                        if handle.cancelled:
                            return
                        if dispatch(event):
                            return

            for event in decoder.flush():
                if handle.cancelled:
                    return
                if dispatch(event):
                    return
            if not handle.cancelled:
                on_error(CLOSED_EARLY_MESSAGE)
        except asyncio.CancelledError:
            if handle.cancelled:
                return
            raise
        except httpx.HTTPError as exc:
            if handle.cancelled:
                return
            on_error(f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__)
