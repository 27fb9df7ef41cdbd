from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from services.errors import ConfigurationError
from settings import DEFAULT_DESTINATION

DEFAULT_BROKER_URL = "./tmp/mock_queue"
DEFAULT_INTERVAL_SECONDS = 5
DEFAULT_BACKOFF_INITIAL = 1.0
DEFAULT_BACKOFF_MULTIPLIER = 2.0

_DEVICE_ID_ENV = "DEVICE_ID"
_BROKER_URL_ENV = "BROKER_URL"
_BROKER_USER_ENV = "BROKER_USER"
_BROKER_PASSWORD_ENV = "BROKER_PASSWORD"
_DESTINATION_ENV = "DESTINATION"
_INTERVAL_ENV = "PUBLISH_INTERVAL_SECONDS"
_BACKOFF_INITIAL_ENV = "BACKOFF_INITIAL_SECONDS"
_BACKOFF_MULTIPLIER_ENV = "BACKOFF_MULTIPLIER"


@dataclass(frozen=True)
class SimulatorConfig:
    device_id: int = 1
    broker_url: str = DEFAULT_BROKER_URL
    broker_user: str = "admin"
    broker_password: str = "admin"
    destination: str = DEFAULT_DESTINATION
    interval_seconds: float = DEFAULT_INTERVAL_SECONDS
    backoff_initial: float = DEFAULT_BACKOFF_INITIAL
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER


def _env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _parse_number(name: str, raw: str, kind: type) -> float:
    try:
        return kind(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


def load_config(
    device_id: Optional[int] = None,
    broker_url: Optional[str] = None,
    destination: Optional[str] = None,
    interval_seconds: Optional[float] = None,
) -> SimulatorConfig:
    """Build the simulator configuration from arguments, then env, then defaults.

    Unlike the lenient service settings, invalid values here are fatal: the
    simulator must not start publishing with a broken configuration.
    """
    if device_id is None:
        device_id = int(_parse_number(_DEVICE_ID_ENV, _env(_DEVICE_ID_ENV, "1"), int))
    if interval_seconds is None:
        interval_seconds = _parse_number(
            _INTERVAL_ENV, _env(_INTERVAL_ENV, str(DEFAULT_INTERVAL_SECONDS)), float
        )
    if interval_seconds <= 0:
        raise ConfigurationError(f"{_INTERVAL_ENV} must be > 0, got {interval_seconds!r}")

    backoff_initial = _parse_number(
        _BACKOFF_INITIAL_ENV, _env(_BACKOFF_INITIAL_ENV, str(DEFAULT_BACKOFF_INITIAL)), float
    )
    backoff_multiplier = _parse_number(
        _BACKOFF_MULTIPLIER_ENV,
        _env(_BACKOFF_MULTIPLIER_ENV, str(DEFAULT_BACKOFF_MULTIPLIER)),
        float,
    )
    if backoff_initial <= 0 or backoff_multiplier < 1:
        raise ConfigurationError("Backoff needs an initial delay > 0 and a multiplier >= 1.")

    return SimulatorConfig(
        device_id=device_id,
        broker_url=broker_url or _env(_BROKER_URL_ENV, DEFAULT_BROKER_URL),
        broker_user=_env(_BROKER_USER_ENV, "admin"),
        broker_password=_env(_BROKER_PASSWORD_ENV, "admin"),
        destination=destination or _env(_DESTINATION_ENV, DEFAULT_DESTINATION),
        interval_seconds=interval_seconds,
        backoff_initial=backoff_initial,
        backoff_multiplier=backoff_multiplier,
    )
