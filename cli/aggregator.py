"""Client-side merge of the historical snapshot and the live feed.

The aggregator keeps a bounded series per device and recomputes summary
figures from the whole in-memory state on every change. Two producers feed it
(the one-shot history load and the live subscription) and a ticker refreshes
the recency label. All of them mutate state only through
:meth:`ClientAggregator._apply`, which swaps in a new frozen
:class:`AggregatorState`, so readers always see a consistent snapshot and no
locks are needed on the single event loop.

History and live readings are not reconciled: a reading delivered by both
paths shows up twice unless a ``dedupe_key`` is supplied.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Hashable,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
)

from cli.live import LiveConnector
from models.aliases import (
    DEVICE_ID_ALIASES,
    GENERATED_AT_ALIASES,
    HUMIDITY_ALIASES,
    TEMPERATURE_ALIASES,
    resolve_value,
)
from models.records import ConnectionState
from services.errors import HistoricalFetchError, ValidationError
from services.validation import normalize_timestamp

logger = logging.getLogger(__name__)

MAX_POINTS = 60
RECONNECT_DELAY = 3.0
TICK_INTERVAL = 1.0


@dataclass(frozen=True)
class ClientReading:
    device_id: int
    timestamp: datetime
    temperature: Optional[float]
    humidity: Optional[float]
    id: Optional[int] = None


SeriesMap = Mapping[int, Tuple[ClientReading, ...]]
DedupeKey = Callable[[ClientReading], Optional[Hashable]]


def identity_key(reading: ClientReading) -> Optional[Hashable]:
    """Dedupe on the store-assigned id; readings without one are never deduped."""
    return reading.id


def _to_device_id(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if math.isfinite(parsed) and parsed.is_integer():
        return int(parsed)
    return None


def _to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


def _to_timestamp(value: Any, now: datetime) -> datetime:
    if not isinstance(value, str) or not value.strip():
        return now
    try:
        return normalize_timestamp(value)
    except ValidationError:
        pass
    try:
        return datetime.fromisoformat(value.strip()).astimezone(timezone.utc)
    except ValueError:
        return now


def normalize_reading(payload: Any, now: Optional[datetime] = None) -> Optional[ClientReading]:
    """Lenient normalization for display.

    Unlike ingestion, a bad numeric field only blanks that value. The reading
    is skipped only when it has no integer device id, since it cannot be
    assigned to a series.
    """
    if not isinstance(payload, Mapping):
        return None
    device_id = _to_device_id(resolve_value(payload, DEVICE_ID_ALIASES))
    if device_id is None:
        return None
    current = now or datetime.now(timezone.utc)
    raw_id = payload.get("id")
    return ClientReading(
        device_id=device_id,
        timestamp=_to_timestamp(resolve_value(payload, GENERATED_AT_ALIASES), current),
        temperature=_to_number(resolve_value(payload, TEMPERATURE_ALIASES)),
        humidity=_to_number(resolve_value(payload, HUMIDITY_ALIASES)),
        id=raw_id if isinstance(raw_id, int) and not isinstance(raw_id, bool) else None,
    )


def parse_live_message(body: str | bytes, now: Optional[datetime] = None) -> List[ClientReading]:
    """A live frame holds one reading or an array of them."""
    try:
        payload = json.loads(body)
    except (TypeError, ValueError):
        logger.warning("Ignoring unparseable live message", extra={"payload": str(body)[:200]})
        return []
    items = payload if isinstance(payload, list) else [payload]
    readings = (normalize_reading(item, now) for item in items)
    return [reading for reading in readings if reading is not None]


def append_reading(
    series: SeriesMap,
    reading: ClientReading,
    capacity: int = MAX_POINTS,
    dedupe_key: Optional[DedupeKey] = None,
) -> SeriesMap:
    """Return a new map with ``reading`` appended to its device series, oldest evicted first."""
    current = series.get(reading.device_id, ())
    if dedupe_key is not None:
        key = dedupe_key(reading)
        if key is not None and any(dedupe_key(existing) == key for existing in current):
            return series
    updated: Dict[int, Tuple[ClientReading, ...]] = dict(series)
    updated[reading.device_id] = (current + (reading,))[-capacity:]
    return updated


def format_relative_time(timestamp: Optional[datetime], now: datetime) -> str:
    if timestamp is None:
        return "no recent activity"
    seconds = int(max(0.0, (now - timestamp).total_seconds()))
    if seconds < 5:
        return "just now"
    if seconds < 60:
        return f"{seconds}s ago"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m ago"
    return f"{minutes // 60}h ago"


def _mean(values: Iterable[Optional[float]]) -> Optional[float]:
    present = [value for value in values if value is not None]
    if not present:
        return None
    return sum(present) / len(present)


@dataclass(frozen=True)
class Summary:
    device_count: int
    total_points: int
    mean_temperature: Optional[float]
    mean_humidity: Optional[float]
    last_reading: Optional[ClientReading]
    last_update: str


@dataclass(frozen=True)
class AggregatorState:
    series: SeriesMap = field(default_factory=dict)
    store_connected: bool = False
    live_state: ConnectionState = ConnectionState.disconnected
    error: Optional[str] = None
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def live_connected(self) -> bool:
        return self.live_state is ConnectionState.connected

    @property
    def device_ids(self) -> List[int]:
        return sorted(self.series)

    @property
    def last_reading(self) -> Optional[ClientReading]:
        """Newest reading by generation time across every series."""
        latest: Optional[ClientReading] = None
        for series in self.series.values():
            for reading in series:
                if latest is None or reading.timestamp >= latest.timestamp:
                    latest = reading
        return latest


def compute_summary(state: AggregatorState) -> Summary:
    readings = [reading for series in state.series.values() for reading in series]
    last = state.last_reading
    return Summary(
        device_count=len(state.series),
        total_points=len(readings),
        mean_temperature=_mean(reading.temperature for reading in readings),
        mean_humidity=_mean(reading.humidity for reading in readings),
        last_reading=last,
        last_update=format_relative_time(last.timestamp if last else None, state.now),
    )


StateListener = Callable[[AggregatorState], None]
ConnectionListener = Callable[[ConnectionState], None]


class ClientAggregator:
    def __init__(
        self,
        fetch_history: Callable[[], Awaitable[Sequence[Mapping[str, Any]]]],
        live_connector: LiveConnector,
        reconnect_delay: float = RECONNECT_DELAY,
        capacity: int = MAX_POINTS,
        dedupe_key: Optional[DedupeKey] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        tick_interval: float = TICK_INTERVAL,
    ) -> None:
        self._fetch_history = fetch_history
        self._live_connector = live_connector
        self.reconnect_delay = reconnect_delay
        self.capacity = capacity
        self.dedupe_key = dedupe_key
        self._clock = clock
        self._sleep = sleep
        self.tick_interval = tick_interval
        self._state = AggregatorState(now=clock())
        self._listeners: List[StateListener] = []
        self._connection_listeners: List[ConnectionListener] = []

    @property
    def state(self) -> AggregatorState:
        return self._state

    @property
    def summary(self) -> Summary:
        return compute_summary(self._state)

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def add_connection_listener(self, listener: ConnectionListener) -> None:
        self._connection_listeners.append(listener)

    def _apply(self, update: Callable[[AggregatorState], AggregatorState]) -> None:
        previous = self._state
        state = update(previous)
        if state is previous:
            return
        self._state = state
        if state.live_state is not previous.live_state:
            for connection_listener in list(self._connection_listeners):
                connection_listener(state.live_state)
        for listener in list(self._listeners):
            listener(state)

    def _merge(self, state: AggregatorState, readings: Sequence[ClientReading]) -> AggregatorState:
        series = state.series
        for reading in readings:
            series = append_reading(series, reading, self.capacity, self.dedupe_key)
        return replace(state, series=series, store_connected=True)

    async def load_history(self) -> None:
        """One-shot snapshot fetch; failure only sets the status flags."""
        try:
            payload = await self._fetch_history()
        except HistoricalFetchError as exc:
            logger.warning("History load failed", extra={"reason": str(exc)})
            self._apply(
                lambda state: replace(
                    state, store_connected=False, error=f"could not load history: {exc}"
                )
            )
            return

        now = self._clock()
        # The query answers most-recent-first; series are kept in arrival order.
        normalized = (normalize_reading(item, now) for item in reversed(list(payload)))
        readings = [reading for reading in normalized if reading is not None]
        self._apply(lambda state: replace(self._merge(state, readings), error=None))

    def handle_live_message(self, body: str | bytes) -> None:
        readings = parse_live_message(body, self._clock())
        if not readings:
            return
        self._apply(lambda state: self._merge(state, readings))

    def _set_live_state(self, live_state: ConnectionState, **changes: Any) -> None:
        self._apply(lambda state: replace(state, live_state=live_state, **changes))

    async def run_live(self, max_sessions: Optional[int] = None) -> None:
        """Stay subscribed, reconnecting after a fixed delay whenever the feed drops."""
        sessions = 0
        while max_sessions is None or sessions < max_sessions:
            sessions += 1
            self._set_live_state(ConnectionState.connecting)
            try:
                async with self._live_connector() as channel:
                    self._set_live_state(ConnectionState.connected, error=None)
                    async for body in channel:
                        self.handle_live_message(body)
                self._set_live_state(ConnectionState.disconnected)
            except Exception as exc:  # noqa: BLE001 - any feed failure means reconnect
                logger.warning("Live feed dropped", extra={"reason": str(exc)})
                self._set_live_state(
                    ConnectionState.disconnected, error=f"live feed unavailable: {exc}"
                )
            if max_sessions is not None and sessions >= max_sessions:
                break
            await self._sleep(self.reconnect_delay)

    async def run_ticker(self, ticks: Optional[int] = None) -> None:
        """Refresh the clock so the recency label ages without new messages."""
        count = 0
        while ticks is None or count < ticks:
            await self._sleep(self.tick_interval)
            count += 1
            now = self._clock()
            self._apply(lambda state: replace(state, now=now))

    async def run(self) -> None:
        await asyncio.gather(self.load_history(), self.run_live(), self.run_ticker())
