"""Pydantic schemas for the HTTP API layer."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from models.records import HUMIDITY_RANGE, TEMPERATURE_RANGE


class SensorReadingRecord(BaseModel):
    """A reading as stored and as served by the query and live endpoints."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: int = Field(..., ge=1, description="Store-assigned identity, never reused.")
    generated_at: datetime
    device_id: int
    temperature: float = Field(..., ge=TEMPERATURE_RANGE[0], le=TEMPERATURE_RANGE[1])
    humidity: float = Field(..., ge=HUMIDITY_RANGE[0], le=HUMIDITY_RANGE[1])
    received_at: datetime = Field(..., description="Ingestor clock at persist time.")

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class IngestAccepted(BaseModel):
    """Immediate response after a raw payload was handed to the broker."""

    destination: str
    message_id: str = Field(..., alias="messageId")

    model_config = ConfigDict(populate_by_name=True)
