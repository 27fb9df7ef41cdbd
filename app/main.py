from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from app.api import router
from app.hub import build_default_hub
from broker.mock_queue import build_default_broker
from datastore.reading_store import build_default_store
from logging_config import configure_logging
from services.errors import PersistenceError
from services.ingestion import build_default_worker
from settings import get_settings


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    build_default_hub().bind(asyncio.get_running_loop())
    worker = build_default_worker()
    worker.start()
    try:
        yield
    finally:
        worker.stop()
        build_default_worker.cache_clear()
        build_default_hub.cache_clear()
        build_default_broker.cache_clear()
        build_default_store.cache_clear()


async def _persistence_error_handler(_request: Request, exc: PersistenceError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": f"Reading store unavailable: {exc}"},
    )


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="Sensor Telemetry",
        description="Ingests sensor readings from the broker, stores them and streams them to live viewers.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_exception_handler(PersistenceError, _persistence_error_handler)
    app.include_router(router)
    return app


app = create_app()


def run() -> None:
    """Serve the API, the live feed and the ingestion worker in one process."""
    settings = get_settings()
    uvicorn.run(
        "app.main:app",
        host=settings.service_host,
        port=settings.service_port,
        log_config=None,
    )
