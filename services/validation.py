"""Parsing and validation of raw sensor payloads at the ingestion boundary."""

from __future__ import annotations

import json
import math
from datetime import datetime, timezone, tzinfo
from typing import Any, List, Optional, cast

from models.aliases import (
    DEVICE_ID_ALIASES,
    GENERATED_AT_ALIASES,
    HUMIDITY_ALIASES,
    TEMPERATURE_ALIASES,
    resolve_alias,
)
from models.records import HUMIDITY_RANGE, TEMPERATURE_RANGE, NormalizedSample, RawSample
from services.errors import ParseError, ValidationError

LOCAL_TIMESTAMP_FORMAT = "%d/%m/%Y %H:%M:%S"
_PREVIEW_LIMIT = 40


def _preview(value: Any) -> str:
    text = repr(value)
    if len(text) > _PREVIEW_LIMIT:
        return text[: _PREVIEW_LIMIT - 3] + "..."
    return text


def _coerce_int(key: str, value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ParseError(f"{key} must be an integer, got a boolean")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return int(value)
        raise ParseError(f"{key} must be an integer, got {value!r}")
    if isinstance(value, str):
        try:
            return int(value.strip())
        except (ValueError, OverflowError) as exc:
            raise ParseError(f"{key} must be an integer, got {_preview(value)}") from exc
    raise ParseError(f"{key} must be an integer, got {type(value).__name__}")


def _coerce_float(key: str, value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ParseError(f"{key} must be a number, got a boolean")
    try:
        if isinstance(value, (int, float)):
            return float(value)
        if isinstance(value, str):
            return float(value.strip())
    except (ValueError, OverflowError) as exc:
        raise ParseError(f"{key} must be a number, got {_preview(value)}") from exc
    raise ParseError(f"{key} must be a number, got {type(value).__name__}")


def parse(raw_message: str | bytes) -> RawSample:
    """Decode a wire payload into a :class:`RawSample`.

    Only structural problems raise here. Missing or out-of-range values are
    left for :func:`validate` so that all of them are reported together.
    """
    if isinstance(raw_message, bytes):
        try:
            raw_message = raw_message.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ParseError("Payload is not valid UTF-8") from exc

    try:
        payload = json.loads(raw_message)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Malformed JSON payload: {exc.msg}") from exc
    except (ValueError, RecursionError) as exc:
        # Oversized integer literals and pathological nesting.
        raise ParseError(f"Unreadable JSON payload: {type(exc).__name__}") from exc

    if not isinstance(payload, dict):
        raise ParseError(f"Payload must be a JSON object, got {type(payload).__name__}")

    timestamp_key, timestamp = resolve_alias(payload, GENERATED_AT_ALIASES)
    if timestamp is not None and not isinstance(timestamp, str):
        raise ParseError(f"{timestamp_key} must be a string")

    device_key, device_id = resolve_alias(payload, DEVICE_ID_ALIASES)
    temperature_key, temperature = resolve_alias(payload, TEMPERATURE_ALIASES)
    humidity_key, humidity = resolve_alias(payload, HUMIDITY_ALIASES)

    return RawSample(
        generated_at=timestamp,
        device_id=_coerce_int(device_key or "deviceId", device_id),
        temperature=_coerce_float(temperature_key or "temperature", temperature),
        humidity=_coerce_float(humidity_key or "humidity", humidity),
    )


def normalize_timestamp(text: str, tz: Optional[tzinfo] = None) -> datetime:
    """Resolve a generation timestamp to an aware UTC datetime.

    An ISO-8601 instant with ``Z`` or an explicit offset is taken as is.
    Otherwise ``dd/MM/yyyy HH:mm:ss`` is tried and read as wall-clock time in
    ``tz``, or in the ingesting host's zone when ``tz`` is omitted.
    """
    candidate = (text or "").strip()
    if not candidate:
        raise ValidationError(["generatedAt must not be blank"])

    iso_candidate = candidate[:-1] + "+00:00" if candidate.endswith(("Z", "z")) else candidate
    try:
        parsed = datetime.fromisoformat(iso_candidate)
    except ValueError:
        parsed = None
    if parsed is not None and parsed.tzinfo is not None:
        return parsed.astimezone(timezone.utc)

    try:
        local = datetime.strptime(candidate, LOCAL_TIMESTAMP_FORMAT)
    except ValueError as exc:
        raise ValidationError([f"generatedAt {candidate!r} is not a recognised timestamp"]) from exc

    aware = local.replace(tzinfo=tz) if tz is not None else local.astimezone()
    return aware.astimezone(timezone.utc)


def _check_range(name: str, value: Optional[float], bounds: tuple[float, float]) -> Optional[str]:
    if value is None:
        return f"{name} must not be null"
    low, high = bounds
    if not math.isfinite(value) or not low <= value <= high:
        return f"{name} must be between {low:g} and {high:g}"
    return None


def validate(raw: RawSample, tz: Optional[tzinfo] = None) -> None:
    """Raise a single :class:`ValidationError` listing every violation, if any."""
    violations: List[str] = []

    if raw.generated_at is None or not raw.generated_at.strip():
        violations.append("generatedAt must not be blank")
    else:
        try:
            normalize_timestamp(raw.generated_at, tz)
        except ValidationError as exc:
            violations.extend(exc.violations)

    if raw.device_id is None:
        violations.append("deviceId must not be null")

    for name, value, bounds in (
        ("temperature", raw.temperature, TEMPERATURE_RANGE),
        ("humidity", raw.humidity, HUMIDITY_RANGE),
    ):
        problem = _check_range(name, value, bounds)
        if problem:
            violations.append(problem)

    if violations:
        raise ValidationError(violations)


def normalize(raw: RawSample, tz: Optional[tzinfo] = None) -> NormalizedSample:
    """Validate ``raw`` and return it with every field checked and the timestamp in UTC."""
    validate(raw, tz)
    # validate() guarantees every field is present.
    return NormalizedSample(
        generated_at=normalize_timestamp(cast(str, raw.generated_at), tz),
        device_id=cast(int, raw.device_id),
        temperature=cast(float, raw.temperature),
        humidity=cast(float, raw.humidity),
    )
