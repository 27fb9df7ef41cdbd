"""Domain models shared across services."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

TEMPERATURE_RANGE = (-80.0, 120.0)
HUMIDITY_RANGE = (0.0, 100.0)


class ConnectionState(str, Enum):
    """Connectivity of a publisher or live subscriber to its channel."""

    disconnected = "disconnected"
    connecting = "connecting"
    connected = "connected"
    backing_off = "backing_off"


@dataclass(slots=True)
class RawSample:
    """A reading as it arrived on the wire, with alias names already resolved."""

    generated_at: Optional[str]
    device_id: Optional[int]
    temperature: Optional[float]
    humidity: Optional[float]


@dataclass(frozen=True, slots=True)
class NormalizedSample:
    """A validated reading that has not been persisted yet."""

    generated_at: datetime
    device_id: int
    temperature: float
    humidity: float
