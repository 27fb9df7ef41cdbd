"""Error taxonomy for the telemetry pipeline."""

from __future__ import annotations

from typing import Iterable


class TelemetryError(Exception):
    """Base class for pipeline errors."""


class ConfigurationError(TelemetryError):
    """Startup configuration is invalid; the process must not start."""


class TransportError(TelemetryError):
    """Connection-level failure talking to the broker or the live feed."""


class ParseError(TelemetryError):
    """A payload could not be decoded into a raw sample."""


class ValidationError(TelemetryError):
    """A decoded sample violates one or more field constraints."""

    def __init__(self, violations: Iterable[str]) -> None:
        self.violations = list(violations)
        super().__init__(", ".join(self.violations) or "invalid sample")


class PersistenceError(TelemetryError):
    """The reading store could not durably record a sample."""


class HistoricalFetchError(TelemetryError):
    """The historical snapshot could not be fetched from the service."""
