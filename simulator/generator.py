"""Synthetic reading generator for one simulated sensor."""

from __future__ import annotations

import json
import logging
import random
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from broker.mock_queue import MockQueueBroker
from services.errors import ConfigurationError, TransportError
from settings import broker_root_from_url
from simulator.config import SimulatorConfig
from simulator.publisher import ResilientPublisher

logger = logging.getLogger(__name__)

TEMPERATURE_BOUNDS = (18.0, 34.0)
HUMIDITY_BOUNDS = (30.0, 80.0)
TIMESTAMP_FORMAT = "%d/%m/%Y %H:%M:%S"


def _round_between(rng: random.Random, low: float, high: float) -> float:
    return round(rng.uniform(low, high), 2)


class ReadingGenerator:
    """Publishes one reading per interval while the broker is reachable.

    Nothing is generated while the publisher is disconnected: ticks missed
    during an outage are skipped, not buffered.
    """

    def __init__(
        self,
        device_id: int,
        publisher: ResilientPublisher,
        interval_seconds: float,
        rng: Optional[random.Random] = None,
        now: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.device_id = device_id
        self.publisher = publisher
        self.interval_seconds = interval_seconds
        self._rng = rng or random.Random()
        self._now = now
        self._sleep = sleep
        self.published = 0
        self.dropped = 0

    def build_sample(self) -> Dict[str, Any]:
        return {
            "fechaGeneración": self._now().strftime(TIMESTAMP_FORMAT),
            "IdDispositivo": self.device_id,
            "temperatura": _round_between(self._rng, *TEMPERATURE_BOUNDS),
            "humedad": _round_between(self._rng, *HUMIDITY_BOUNDS),
        }

    def tick(self) -> bool:
        """Wait for a connection, then build and publish one sample."""
        self.publisher.ensure_connected()
        payload = json.dumps(self.build_sample(), ensure_ascii=False)
        try:
            self.publisher.publish(payload)
        except TransportError:
            self.dropped += 1
            return False
        self.published += 1
        logger.info("Sample published", extra={"device_id": self.device_id, "payload": payload})
        return True

    def run(self, max_ticks: Optional[int] = None) -> None:
        """Publish forever, or until ``max_ticks`` samples were published."""
        while max_ticks is None or self.published < max_ticks:
            if self.tick():
                self._sleep(self.interval_seconds)


def build_generator(config: SimulatorConfig, rng: Optional[random.Random] = None) -> ReadingGenerator:
    """Wire a generator to the broker described by ``config``."""
    root = broker_root_from_url(config.broker_url)
    if root is None:
        raise ConfigurationError("The in-memory broker cannot be shared with another process.")
    broker = MockQueueBroker(
        name=config.broker_url,
        root_path=Path(root),
        username=config.broker_user,
        password=config.broker_password,
    )

    def connector():
        return broker.connect(config.broker_user, config.broker_password)

    publisher = ResilientPublisher(
        connector=connector,
        destination=config.destination,
        initial_delay=config.backoff_initial,
        multiplier=config.backoff_multiplier,
    )
    return ReadingGenerator(
        device_id=config.device_id,
        publisher=publisher,
        interval_seconds=config.interval_seconds,
        rng=rng,
    )
