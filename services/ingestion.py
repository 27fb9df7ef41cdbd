"""Ingestion of raw sensor payloads: parse, validate, persist, then broadcast."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone, tzinfo
from functools import lru_cache
from typing import Callable, Optional

from app.hub import build_default_hub
from app.schemas import SensorReadingRecord
from broker.mock_queue import Delivery, MockQueueBroker, build_default_broker
from datastore.reading_store import ReadingStore, build_default_store
from models.records import NormalizedSample, RawSample
from services import validation
from services.errors import ParseError, PersistenceError, TransportError, ValidationError
from settings import get_settings

logger = logging.getLogger(__name__)

Broadcaster = Callable[[SensorReadingRecord], None]

_PAYLOAD_LOG_LIMIT = 512


def _excerpt(raw_message: str | bytes) -> str:
    text = raw_message.decode("utf-8", "replace") if isinstance(raw_message, bytes) else raw_message
    if len(text) > _PAYLOAD_LOG_LIMIT:
        return text[:_PAYLOAD_LOG_LIMIT] + "..."
    return text


def _drop_broadcast(_record: SensorReadingRecord) -> None:
    return None


class IngestionService:
    """Turns one transport message into one stored and broadcast reading.

    A reading is always persisted before it is broadcast, so anything a live
    subscriber sees can already be fetched from the store.
    """

    def __init__(
        self,
        store: ReadingStore,
        broadcaster: Optional[Broadcaster] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        local_tz: Optional[tzinfo] = None,
    ) -> None:
        self.store = store
        self.broadcaster = broadcaster or _drop_broadcast
        self._clock = clock
        self._local_tz = local_tz

    def parse(self, raw_message: str | bytes) -> RawSample:
        return validation.parse(raw_message)

    def validate(self, raw: RawSample) -> None:
        validation.validate(raw, self._local_tz)

    def normalize_timestamp(self, text: str) -> datetime:
        return validation.normalize_timestamp(text, self._local_tz)

    def normalize(self, raw: RawSample) -> NormalizedSample:
        return validation.normalize(raw, self._local_tz)

    def persist(self, sample: NormalizedSample) -> SensorReadingRecord:
        try:
            return self.store.append(sample, received_at=self._clock())
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(f"Reading store rejected the sample: {exc}") from exc

    def broadcast(self, record: SensorReadingRecord) -> None:
        """Best-effort hand-off to live subscribers; failures are logged, never raised."""
        try:
            self.broadcaster(record)
        except Exception:
            logger.warning(
                "Live broadcast failed; subscribers will catch up from history.",
                exc_info=True,
                extra={"reading_id": record.id, "device_id": record.device_id},
            )

    def consume(self, raw_message: str | bytes) -> Optional[SensorReadingRecord]:
        """Run the full pipeline for one message.

        Returns the stored record, or ``None`` when the message was rejected as
        malformed or invalid. Rejected messages are terminal and must not be
        redelivered. Any other exception propagates to the caller so that the
        transport can redeliver the message.
        """
        try:
            raw = self.parse(raw_message)
            sample = self.normalize(raw)
        except ParseError as exc:
            logger.warning(
                "Reading rejected",
                extra={"reason": f"parse error: {exc}", "payload": _excerpt(raw_message)},
            )
            return None
        except ValidationError as exc:
            logger.warning(
                "Reading rejected",
                extra={
                    "reason": "validation error",
                    "violations": exc.violations,
                    "payload": _excerpt(raw_message),
                },
            )
            return None

        record = self.persist(sample)
        self.broadcast(record)
        logger.info(
            "Reading processed",
            extra={"reading_id": record.id, "device_id": record.device_id},
        )
        return record


class IngestionWorker:
    """Single consumer of a broker destination.

    Messages are handled strictly one at a time in delivery order. A message is
    acked once ``consume`` returns; if it raises, the message is nacked and
    redelivered after ``redelivery_delay``.
    """

    def __init__(
        self,
        service: IngestionService,
        broker: MockQueueBroker,
        destination: str,
        poll_interval: float = 0.2,
        redelivery_delay: float = 1.0,
    ) -> None:
        self.service = service
        self.broker = broker
        self.destination = destination
        self.poll_interval = poll_interval
        self.redelivery_delay = redelivery_delay
        self.executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ingestion")
        self._stop = threading.Event()
        self._future: Optional[Future[None]] = None
        self.processed = 0
        self.rejected = 0
        self.failed = 0

    def start(self) -> None:
        if self._future is not None:
            return
        self._stop.clear()
        self._future = self.executor.submit(self._run)
        logger.info("Ingestion worker started", extra={"destination": self.destination})

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Signal the loop and wait for the in-flight message to finish."""
        self._stop.set()
        if self._future is not None:
            self._future.result(timeout=timeout)
            self._future = None
        self.executor.shutdown(wait=False, cancel_futures=True)

    @property
    def running(self) -> bool:
        return self._future is not None and not self._future.done()

    def process_next(self, timeout: float = 0.0) -> bool:
        """Receive and handle at most one message. Returns ``False`` when idle."""
        delivery = self.broker.receive(self.destination, timeout=timeout)
        if delivery is None:
            return False
        self._handle(delivery)
        return True

    def _handle(self, delivery: Delivery) -> None:
        try:
            record = self.service.consume(delivery.body)
        except Exception:
            self.failed += 1
            logger.error(
                "Reading processing failed; message will be redelivered",
                exc_info=True,
                extra={
                    "message_id": delivery.message_id,
                    "attempt": delivery.delivery_count,
                    "payload": _excerpt(delivery.body),
                },
            )
            self.broker.nack(delivery)
            self._stop.wait(self.redelivery_delay)
            return

        if record is None:
            self.rejected += 1
        else:
            self.processed += 1
        self.broker.ack(delivery)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.process_next(timeout=self.poll_interval)
            except TransportError as exc:
                logger.warning(
                    "Broker receive failed",
                    extra={"destination": self.destination, "reason": str(exc)},
                )
                self._stop.wait(self.redelivery_delay)
            except Exception:  # noqa: BLE001 - the loop must outlive any single failure
                logger.exception(
                    "Ingestion loop error",
                    extra={"destination": self.destination},
                )
                self._stop.wait(self.redelivery_delay)


@lru_cache
def build_default_worker() -> IngestionWorker:
    """Factory that wires the worker to the default store, broker and hub."""
    settings = get_settings()
    hub = build_default_hub()
    service = IngestionService(store=build_default_store(), broadcaster=hub.publish)
    return IngestionWorker(
        service=service,
        broker=build_default_broker(),
        destination=settings.destination,
        poll_interval=settings.poll_interval,
        redelivery_delay=settings.redelivery_delay,
    )
