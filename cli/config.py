from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_BASE_URL = "http://localhost:8000"
DEFAULT_RECONNECT_DELAY = 3.0
DEFAULT_TIMEOUT = 10.0
LIVE_FEED_PATH = "/ws/readings"

_BASE_URL_ENV = "API_BASE_URL"
_LIVE_URL_ENV = "LIVE_FEED_URL"
_RECONNECT_DELAY_ENV = "LIVE_RECONNECT_DELAY"
_TIMEOUT_ENV = "CLI_REQUEST_TIMEOUT"


@dataclass(frozen=True)
class CLIConfig:
    base_url: str = DEFAULT_BASE_URL
    live_url: str = "ws://localhost:8000" + LIVE_FEED_PATH
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY
    request_timeout: float = DEFAULT_TIMEOUT


def _read_float(value: Optional[str], default: float) -> float:
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = float(candidate)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def derive_live_url(base_url: str) -> str:
    """``http://host`` -> ``ws://host/ws/readings`` (and ``https`` -> ``wss``)."""
    if base_url.startswith("https://"):
        return "wss://" + base_url[len("https://"):] + LIVE_FEED_PATH
    if base_url.startswith("http://"):
        return "ws://" + base_url[len("http://"):] + LIVE_FEED_PATH
    return base_url + LIVE_FEED_PATH


def load_config(
    base_url: Optional[str] = None,
    live_url: Optional[str] = None,
    reconnect_delay: Optional[float] = None,
) -> CLIConfig:
    url = (base_url or os.getenv(_BASE_URL_ENV) or DEFAULT_BASE_URL).rstrip("/")
    feed = live_url or os.getenv(_LIVE_URL_ENV) or derive_live_url(url)
    if reconnect_delay is None:
        reconnect_delay = _read_float(os.getenv(_RECONNECT_DELAY_ENV), DEFAULT_RECONNECT_DELAY)
    return CLIConfig(
        base_url=url,
        live_url=feed,
        reconnect_delay=reconnect_delay,
        request_timeout=_read_float(os.getenv(_TIMEOUT_ENV), DEFAULT_TIMEOUT),
    )
