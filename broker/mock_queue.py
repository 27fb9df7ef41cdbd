from __future__ import annotations
import itertools
import os
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from threading import Condition
from typing import Deque, Dict, Optional, Tuple
from uuid import uuid4

from services.errors import TransportError
from settings import broker_root_from_url, get_settings

_MESSAGE_SUFFIX = ".msg"
_CLAIMED_SUFFIX = ".claimed"


@dataclass(frozen=True)
class Delivery:
    """A message handed to a consumer; it stays owned by the broker until acked."""

    destination: str
    message_id: str
    body: str
    delivery_count: int = 1

    @property
    def redelivered(self) -> bool:
        return self.delivery_count > 1


class QueueConnection:
    """Producer-side handle returned by :meth:`MockQueueBroker.connect`."""

    def __init__(self, broker: "MockQueueBroker") -> None:
        self._broker = broker
        self.closed = False

    def send(self, destination: str, body: str) -> str:
        if self.closed:
            raise TransportError("Connection is closed.")
        return self._broker.enqueue(destination, body)

    def close(self) -> None:
        self.closed = True


class MockQueueBroker:
    """At-least-once, FIFO-per-destination queue.

    Without ``root_path`` messages live in process memory. With it, each message
    is one file under ``root_path/<destination>/`` whose name sorts in enqueue
    order, and consumers claim a message by renaming it, so several processes
    can share one spool directory.
    """

    def __init__(
        self,
        name: str,
        root_path: Optional[Path] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        poll_interval: float = 0.05,
    ) -> None:
        self.name = name
        self.root_path = root_path
        self.username = username
        self.password = password
        self.poll_interval = poll_interval
        self._queues: Dict[str, Deque[Tuple[str, str]]] = defaultdict(deque)
        self._in_flight: Dict[str, Tuple[str, str]] = {}
        self._delivery_counts: Dict[str, int] = {}
        self._condition = Condition()
        self._sequence = itertools.count()
        if root_path:
            root_path.mkdir(parents=True, exist_ok=True)
            self._restore_claimed(root_path)

    def connect(self, username: Optional[str] = None, password: Optional[str] = None) -> QueueConnection:
        if self.username is not None and (username, password) != (self.username, self.password):
            raise TransportError(f"Authentication to broker {self.name!r} failed.")
        if self.root_path and not self.root_path.is_dir():
            raise TransportError(f"Broker spool {str(self.root_path)!r} is unavailable.")
        return QueueConnection(self)

    def enqueue(self, destination: str, body: str) -> str:
        message_id = f"{time.time_ns():020d}-{next(self._sequence):06d}-{uuid4().hex[:8]}"
        if not self.root_path:
            with self._condition:
                self._queues[destination].append((message_id, body))
                self._condition.notify_all()
            return message_id

        directory = self._spool_dir(self.root_path, destination)
        tmp_path = directory / f".{message_id}.tmp"
        try:
            directory.mkdir(exist_ok=True)
            tmp_path.write_text(body, encoding="utf-8")
            os.replace(tmp_path, directory / f"{message_id}{_MESSAGE_SUFFIX}")
        except OSError as exc:
            raise TransportError(f"Could not enqueue on {destination!r}: {exc}") from exc
        return message_id

    def receive(self, destination: str, timeout: float = 0.0) -> Optional[Delivery]:
        """Claim the oldest pending message, waiting up to ``timeout`` seconds."""

        if not self.root_path:
            with self._condition:
                self._condition.wait_for(lambda: bool(self._queues[destination]), timeout=timeout)
                if not self._queues[destination]:
                    return None
                message_id, body = self._queues[destination].popleft()
                self._in_flight[message_id] = (destination, body)
                return self._delivery(destination, message_id, body)

        deadline = time.monotonic() + timeout
        while True:
            delivery = self._claim_from_spool(self.root_path, destination)
            remaining = deadline - time.monotonic()
            if delivery is not None or remaining <= 0:
                return delivery
            time.sleep(min(self.poll_interval, remaining))

    def ack(self, delivery: Delivery) -> None:
        with self._condition:
            self._delivery_counts.pop(delivery.message_id, None)
            self._in_flight.pop(delivery.message_id, None)
        if not self.root_path:
            return
        try:
            self._spool_path(self.root_path, delivery, _CLAIMED_SUFFIX).unlink(missing_ok=True)
        except OSError as exc:
            raise TransportError(f"Could not acknowledge {delivery.message_id!r}: {exc}") from exc

    def nack(self, delivery: Delivery) -> None:
        """Return the message to the head of its destination for redelivery."""

        if not self.root_path:
            with self._condition:
                entry = self._in_flight.pop(delivery.message_id, None)
                if entry is not None:
                    self._queues[delivery.destination].appendleft((delivery.message_id, entry[1]))
                    self._condition.notify_all()
            return

        try:
            os.replace(
                self._spool_path(self.root_path, delivery, _CLAIMED_SUFFIX),
                self._spool_path(self.root_path, delivery, _MESSAGE_SUFFIX),
            )
        except OSError as exc:
            raise TransportError(f"Could not requeue {delivery.message_id!r}: {exc}") from exc

    def pending(self, destination: str) -> int:
        if not self.root_path:
            with self._condition:
                return len(self._queues[destination])
        directory = self.root_path / destination
        if not directory.is_dir():
            return 0
        return sum(1 for _ in directory.glob(f"*{_MESSAGE_SUFFIX}"))

    def _delivery(self, destination: str, message_id: str, body: str) -> Delivery:
        count = self._delivery_counts.get(message_id, 0) + 1
        self._delivery_counts[message_id] = count
        return Delivery(destination=destination, message_id=message_id, body=body, delivery_count=count)

    @staticmethod
    def _spool_dir(root: Path, destination: str) -> Path:
        if not root.is_dir():
            raise TransportError(f"Broker spool {str(root)!r} is unavailable.")
        return root / destination

    @staticmethod
    def _spool_path(root: Path, delivery: Delivery, suffix: str) -> Path:
        return root / delivery.destination / f"{delivery.message_id}{suffix}"

    def _claim_from_spool(self, root: Path, destination: str) -> Optional[Delivery]:
        directory = self._spool_dir(root, destination)
        try:
            candidates = sorted(directory.glob(f"*{_MESSAGE_SUFFIX}"))
        except OSError as exc:
            raise TransportError(f"Could not list {destination!r}: {exc}") from exc

        for path in candidates:
            message_id = path.name[: -len(_MESSAGE_SUFFIX)]
            claimed = directory / f"{message_id}{_CLAIMED_SUFFIX}"
            try:
                os.rename(path, claimed)
            except FileNotFoundError:
                # Claimed by another consumer between listing and rename.
                continue
            except OSError as exc:
                raise TransportError(f"Could not claim {message_id!r}: {exc}") from exc
            try:
                body = claimed.read_text(encoding="utf-8", errors="replace")
            except OSError as exc:
                raise TransportError(f"Could not read {message_id!r}: {exc}") from exc
            with self._condition:
                return self._delivery(destination, message_id, body)
        return None

    def _restore_claimed(self, root: Path) -> None:
        for path in root.rglob(f"*{_CLAIMED_SUFFIX}"):
            message_id = path.name[: -len(_CLAIMED_SUFFIX)]
            os.replace(path, path.with_name(f"{message_id}{_MESSAGE_SUFFIX}"))


@lru_cache
def build_default_broker(url: Optional[str] = None) -> MockQueueBroker:
    settings = get_settings()
    broker_url = settings.broker_url if url is None else url
    root = broker_root_from_url(broker_url)
    return MockQueueBroker(
        name=broker_url,
        root_path=Path(root) if root else None,
        username=settings.broker_user,
        password=settings.broker_password,
    )
