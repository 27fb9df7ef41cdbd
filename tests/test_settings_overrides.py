from __future__ import annotations

from typing import Iterable

from broker.mock_queue import build_default_broker
from datastore.reading_store import build_default_store
from services.ingestion import build_default_worker
from settings import broker_root_from_url, get_settings


def _clear_caches(caches: Iterable) -> None:
    for cache in caches:
        cache.cache_clear()


def test_environment_overrides_apply(monkeypatch, tmp_path) -> None:
    queue_root = tmp_path / "queue"
    store_path = tmp_path / "readings.json"

    monkeypatch.setenv("BROKER_URL", str(queue_root))
    monkeypatch.setenv("BROKER_DESTINATION", "custom_queue")
    monkeypatch.setenv("READINGS_STORE_PATH", str(store_path))
    monkeypatch.setenv("INGEST_POLL_INTERVAL", "0.5")
    monkeypatch.setenv("INGEST_REDELIVERY_DELAY", "2")

    caches = (
        get_settings,
        build_default_broker,
        build_default_store,
        build_default_worker,
    )
    _clear_caches(caches)

    broker = build_default_broker()
    store = build_default_store()
    worker = build_default_worker()

    try:
        assert broker.root_path == queue_root
        assert store.persistence_path == store_path
        assert worker.destination == "custom_queue"
        assert worker.poll_interval == 0.5
        assert worker.redelivery_delay == 2.0
        assert worker.broker is broker
        assert worker.service.store is store
    finally:
        worker.executor.shutdown(wait=False)
        _clear_caches(caches)


def test_invalid_values_fall_back_to_defaults(monkeypatch) -> None:
    monkeypatch.setenv("INGEST_POLL_INTERVAL", "fast")
    monkeypatch.setenv("INGEST_REDELIVERY_DELAY", "-3")
    monkeypatch.setenv("BROKER_DESTINATION", "   ")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    get_settings.cache_clear()

    try:
        settings = get_settings()
        assert settings.poll_interval == 0.2
        assert settings.redelivery_delay == 1.0
        assert settings.destination == "notificacion_sensores"
        assert settings.log_level == "DEBUG"
    finally:
        get_settings.cache_clear()


def test_blank_store_path_keeps_readings_in_memory(monkeypatch) -> None:
    monkeypatch.setenv("READINGS_STORE_PATH", "")
    _clear_caches((get_settings, build_default_store))

    try:
        assert get_settings().store_path is None
        assert build_default_store().persistence_path is None
    finally:
        _clear_caches((get_settings, build_default_store))


def test_broker_url_forms() -> None:
    assert broker_root_from_url("memory://") is None
    assert broker_root_from_url("file:///var/spool/telemetry") == "/var/spool/telemetry"
    assert broker_root_from_url("./tmp/mock_queue") == "./tmp/mock_queue"
