"""Accepted wire names for each logical reading field.

Publishers in the field disagree on key names, so every logical field has one
ordered alias list. The lists are applied once, where a payload is normalized;
nothing past that boundary sees an alias name.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence

DEVICE_ID_ALIASES: Sequence[str] = (
    "IdDispositivo",
    "idDispositivo",
    "deviceId",
    "deviceID",
    "device_id",
)
GENERATED_AT_ALIASES: Sequence[str] = (
    "fechaGeneración",
    "fechaGeneracion",
    "generatedAt",
    "timestamp",
    "time",
)
TEMPERATURE_ALIASES: Sequence[str] = ("temperatura", "temperature")
HUMIDITY_ALIASES: Sequence[str] = ("humedad", "humidity")


def resolve_alias(payload: Mapping[str, Any], aliases: Sequence[str]) -> tuple[Optional[str], Any]:
    """Return ``(key, value)`` for the first alias present with a non-null value."""
    for key in aliases:
        value = payload.get(key)
        if value is not None:
            return key, value
    return None, None


def resolve_value(payload: Mapping[str, Any], aliases: Sequence[str]) -> Any:
    return resolve_alias(payload, aliases)[1]
