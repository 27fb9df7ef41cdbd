"""Broker publisher that reconnects with exponential backoff, forever."""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional, Protocol

from models.records import ConnectionState
from services.errors import TransportError

logger = logging.getLogger(__name__)


class Connection(Protocol):
    def send(self, destination: str, body: str) -> str: ...

    def close(self) -> None: ...


Connector = Callable[[], Connection]
StateListener = Callable[[ConnectionState], None]


class ResilientPublisher:
    """Connection state machine around a broker connector.

    ``disconnected -> connecting -> connected``; any transport failure moves to
    ``backing_off``. The k-th consecutive failure schedules the next attempt
    ``initial_delay * multiplier ** (k - 1)`` seconds later with no ceiling and
    no attempt limit. The failure count resets after a successful publish.
    """

    def __init__(
        self,
        connector: Connector,
        destination: str,
        initial_delay: float = 1.0,
        multiplier: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._connector = connector
        self.destination = destination
        self.initial_delay = initial_delay
        self.multiplier = multiplier
        self._sleep = sleep
        self._connection: Optional[Connection] = None
        self._listeners: List[StateListener] = []
        self.state = ConnectionState.disconnected
        self.consecutive_failures = 0
        self.attempts = 0
        self.last_error: Optional[str] = None

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    @property
    def current_delay(self) -> float:
        """Delay before the next attempt, or ``0.0`` when not backing off."""
        if self.consecutive_failures == 0:
            return 0.0
        return self.initial_delay * self.multiplier ** (self.consecutive_failures - 1)

    def ensure_connected(self) -> None:
        """Block until a connection is open, retrying sequentially."""
        while self.state is not ConnectionState.connected:
            if self.state is ConnectionState.backing_off:
                self._sleep(self.current_delay)
            self._transition(ConnectionState.connecting)
            self.attempts += 1
            try:
                self._connection = self._connector()
            except TransportError as exc:
                self._fail(exc)
                continue
            self._transition(ConnectionState.connected)

    def publish(self, body: str) -> str:
        """Send one message. On failure the publisher backs off and the error is re-raised."""
        if self.state is not ConnectionState.connected or self._connection is None:
            raise TransportError("Publisher is not connected.")
        try:
            message_id = self._connection.send(self.destination, body)
        except TransportError as exc:
            self._fail(exc)
            raise
        self.consecutive_failures = 0
        return message_id

    def close(self) -> None:
        self._close_connection()
        self._transition(ConnectionState.disconnected)

    def _fail(self, exc: TransportError) -> None:
        self._close_connection()
        self.consecutive_failures += 1
        self.last_error = str(exc)
        self._transition(ConnectionState.backing_off)
        logger.warning(
            "Broker unavailable, backing off",
            extra={
                "attempt": self.consecutive_failures,
                "delay_s": round(self.current_delay, 3),
                "reason": str(exc),
            },
        )

    def _close_connection(self) -> None:
        connection, self._connection = self._connection, None
        if connection is None:
            return
        try:
            connection.close()
        except TransportError:
            logger.debug("Ignoring error while closing a broken connection", exc_info=True)

    def _transition(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        self.state = state
        logger.info("Publisher state changed", extra={"state": state.value})
        for listener in list(self._listeners):
            listener(state)
