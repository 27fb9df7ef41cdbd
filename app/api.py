"""HTTP and WebSocket route definitions for the service."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect, status

from app.hub import ReadingHub, build_default_hub
from app.schemas import IngestAccepted, SensorReadingRecord
from broker.mock_queue import MockQueueBroker, build_default_broker
from datastore.reading_store import RECENT_LIMIT, ReadingStore, build_default_store
from services.errors import TransportError
from services.ingestion import IngestionWorker, build_default_worker
from settings import get_settings

logger = logging.getLogger(__name__)

router = APIRouter()


def get_store() -> ReadingStore:
    return build_default_store()


def get_broker() -> MockQueueBroker:
    return build_default_broker()


def get_hub() -> ReadingHub:
    return build_default_hub()


def get_worker() -> IngestionWorker:
    return build_default_worker()


@router.get(
    "/api/readings/recent",
    response_model=list[SensorReadingRecord],
    summary=f"Most recently received readings across all devices (at most {RECENT_LIMIT}).",
)
async def recent_readings(
    store: ReadingStore = Depends(get_store),
) -> list[SensorReadingRecord]:
    return store.recent(limit=RECENT_LIMIT)


@router.get(
    "/api/readings/by-device/{device_id}",
    response_model=list[SensorReadingRecord],
    summary=f"Most recently received readings for one device (at most {RECENT_LIMIT}).",
)
async def readings_by_device(
    device_id: int,
    store: ReadingStore = Depends(get_store),
) -> list[SensorReadingRecord]:
    return store.recent(limit=RECENT_LIMIT, device_id=device_id)


@router.post(
    "/api/readings/ingest",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=IngestAccepted,
    summary="Queue a raw sensor payload for ingestion.",
)
async def ingest_raw(
    request: Request,
    broker: MockQueueBroker = Depends(get_broker),
) -> IngestAccepted:
    body = (await request.body()).decode("utf-8", "replace")
    if not body.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Payload is empty.",
        )

    settings = get_settings()
    try:
        connection = broker.connect(settings.broker_user, settings.broker_password)
        try:
            message_id = connection.send(settings.destination, body)
        finally:
            connection.close()
    except TransportError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc
    return IngestAccepted(destination=settings.destination, message_id=message_id)


@router.websocket("/ws/readings")
async def live_readings(
    websocket: WebSocket,
) -> None:
    hub = get_hub()
    # Registered before the handshake completes so nothing published after the
    # client sees the connection open is missed.
    await hub.add(websocket)
    try:
        await websocket.accept()
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await hub.remove(websocket)


@router.get(
    "/health",
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck(
    worker: IngestionWorker = Depends(get_worker),
) -> dict[str, str]:
    return {
        "status": "ok",
        "ingestion": "running" if worker.running else "stopped",
    }


@router.get(
    "/",
    summary="Root endpoint mirrors health information.",
    status_code=status.HTTP_200_OK,
)
async def root() -> dict[str, str]:
    return {"status": "ok", "detail": "See /health for service status."}
