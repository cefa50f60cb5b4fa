# core/http_client.py
import asyncio
import logging
from weakref import WeakKeyDictionary

import httpx

logger = logging.getLogger(__name__)

# Reads are the gaps between SSE frames; the model may think for a while
STREAM_TIMEOUT = httpx.Timeout(connect=5.0, read=120.0, write=10.0, pool=5.0)
STREAM_LIMITS = httpx.Limits(max_connections=20, max_keepalive_connections=5)
STREAM_HEADERS = {
    "Accept": "text/event-stream",
    "User-Agent": "diagram-chat-client/0.1",
}

_clients: "WeakKeyDictionary[asyncio.AbstractEventLoop, httpx.AsyncClient]" = WeakKeyDictionary()


def _build_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=STREAM_TIMEOUT, limits=STREAM_LIMITS, headers=STREAM_HEADERS)


def get_client() -> httpx.AsyncClient:
    """
    Shared AsyncClient for streaming.client.ChatStreamClient, one per event loop.

    A client closed by close_client() is replaced on the next call.
    """
    loop = asyncio.get_running_loop()
    client = _clients.get(loop)
    if client is None or client.is_closed:
        client = _build_client()
        _clients[loop] = client
    return client


async def close_client() -> None:
    """Close every shared client. Called from the app lifespan on shutdown."""
    clients = [c for c in _clients.values() if not c.is_closed]
    _clients.clear()
    for client in clients:
        await client.aclose()
    if clients:
        logger.info("Closed stream HTTP clients", extra={"count": len(clients)})
