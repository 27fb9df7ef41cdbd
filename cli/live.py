"""WebSocket subscription to the live reading feed."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Callable, Protocol

import websockets

from services.errors import TransportError


class LiveChannel(Protocol):
    def __aiter__(self) -> AsyncIterator[str]: ...


LiveConnector = Callable[[], AsyncContextManager[LiveChannel]]


class _WebSocketChannel:
    def __init__(self, websocket) -> None:
        self._websocket = websocket

    async def __aiter__(self) -> AsyncIterator[str]:
        try:
            async for message in self._websocket:
                yield message if isinstance(message, str) else message.decode("utf-8", "replace")
        except websockets.ConnectionClosed as exc:
            raise TransportError(f"live feed closed: {exc}") from exc


def websocket_connector(url: str) -> LiveConnector:
    """Connector that opens ``url`` and yields an iterator of text frames."""

    @asynccontextmanager
    async def connect() -> AsyncIterator[LiveChannel]:
        try:
            websocket = await websockets.connect(url)
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as exc:
            raise TransportError(f"could not connect to {url}: {exc}") from exc
        try:
            yield _WebSocketChannel(websocket)
        finally:
            await websocket.close()

    return connect
