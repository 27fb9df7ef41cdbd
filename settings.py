from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


_STORE_PATH_ENV = "READINGS_STORE_PATH"
_BROKER_URL_ENV = "BROKER_URL"
_BROKER_USER_ENV = "BROKER_USER"
_BROKER_PASSWORD_ENV = "BROKER_PASSWORD"
_DESTINATION_ENV = "BROKER_DESTINATION"
_POLL_INTERVAL_ENV = "INGEST_POLL_INTERVAL"
_REDELIVERY_DELAY_ENV = "INGEST_REDELIVERY_DELAY"
_LOG_LEVEL_ENV = "LOG_LEVEL"
_SERVICE_HOST_ENV = "SERVICE_HOST"
_SERVICE_PORT_ENV = "SERVICE_PORT"

DEFAULT_DESTINATION = "notificacion_sensores"
MEMORY_BROKER_URL = "memory://"


@dataclass(frozen=True)
class Settings:
    store_path: Optional[str]
    broker_url: str
    broker_user: str
    broker_password: str
    destination: str
    poll_interval: float
    redelivery_delay: float
    log_level: str
    service_host: str = "127.0.0.1"
    service_port: int = 8000


def _read_str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or default


def _read_optional_env(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or None


def _read_positive_float(name: str, default: float) -> float:
    value = os.getenv(name)
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


def _read_port(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if 0 < parsed < 65536 else default


def _read_log_level(default: str) -> str:
    value = os.getenv(_LOG_LEVEL_ENV)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    return candidate.upper()


def broker_root_from_url(url: str) -> Optional[str]:
    """Map a broker URL to a spool directory, or ``None`` for the in-memory broker."""
    if url == MEMORY_BROKER_URL:
        return None
    if url.startswith("file://"):
        return url[len("file://"):]
    return url


@lru_cache
def get_settings() -> Settings:
    return Settings(
        store_path=_read_optional_env(_STORE_PATH_ENV, "./tmp/readings.json"),
        broker_url=_read_str_env(_BROKER_URL_ENV, "./tmp/mock_queue"),
        broker_user=_read_str_env(_BROKER_USER_ENV, "admin"),
        broker_password=_read_str_env(_BROKER_PASSWORD_ENV, "admin"),
        destination=_read_str_env(_DESTINATION_ENV, DEFAULT_DESTINATION),
        poll_interval=_read_positive_float(_POLL_INTERVAL_ENV, 0.2),
        redelivery_delay=_read_positive_float(_REDELIVERY_DELAY_ENV, 1.0),
        log_level=_read_log_level("INFO"),
        service_host=_read_str_env(_SERVICE_HOST_ENV, "127.0.0.1"),
        service_port=_read_port(_SERVICE_PORT_ENV, 8000),
    )
