from __future__ import annotations

import asyncio
import logging
from functools import lru_cache
from typing import Any, Optional

from fastapi import WebSocket

from app.schemas import SensorReadingRecord

logger = logging.getLogger(__name__)

_SEND_TIMEOUT_S: float = 0.5
"""Per-connection send timeout; connections exceeding this are dropped."""

_SEND_ERROR_LOG_INTERVAL_S: float = 10.0
"""Minimum interval between logged send-error warnings to avoid log spam."""


class ReadingHub:
    """Pushes each stored reading to every connected live subscriber.

    Delivery is best effort: there is no acknowledgement, no retry and no
    replay, so a subscriber that is not connected when a reading is published
    never sees it live.
    """

    def __init__(self, send_timeout_s: float = _SEND_TIMEOUT_S) -> None:
        self._connections: dict[int, WebSocket] = {}
        self._lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._send_timeout_s = send_timeout_s
        self._last_send_error_log_ts = 0.0

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        """Attach the event loop that owns the WebSocket connections."""
        self._loop = loop

    async def add(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._connections[id(websocket)] = websocket

    async def remove(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._connections.pop(id(websocket), None)

    async def subscriber_count(self) -> int:
        async with self._lock:
            return len(self._connections)

    async def broadcast(self, payload: Any) -> None:
        async with self._lock:
            conns = list(self._connections.values())
        if not conns:
            return

        async def _send(websocket: WebSocket) -> WebSocket | None:
            try:
                await asyncio.wait_for(websocket.send_json(payload), timeout=self._send_timeout_s)
                return None
            except Exception:
                now = asyncio.get_running_loop().time()
                if (now - self._last_send_error_log_ts) >= _SEND_ERROR_LOG_INTERVAL_S:
                    self._last_send_error_log_ts = now
                    logger.warning(
                        "Live send failed; subscriber will be removed.",
                        exc_info=True,
                    )
                return websocket

        dead = await asyncio.gather(*(_send(ws) for ws in conns))
        for websocket in dead:
            if websocket is not None:
                await self.remove(websocket)

    def publish(self, record: SensorReadingRecord) -> None:
        """Schedule a broadcast from any thread without waiting for it."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        asyncio.run_coroutine_threadsafe(self.broadcast(record.to_wire()), loop)


@lru_cache
def build_default_hub() -> ReadingHub:
    return ReadingHub()
