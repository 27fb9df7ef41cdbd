from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import httpx
import pytest
from typer.testing import CliRunner

from cli.app import app
from cli.client import ApiClient
from cli.config import CLIConfig, derive_live_url, load_config
from services.errors import HistoricalFetchError


def _wire(reading_id: int, device_id: int = 1) -> Dict[str, Any]:
    return {
        "id": reading_id,
        "generatedAt": "2026-10-19T14:15:00Z",
        "deviceId": device_id,
        "temperature": 21.5,
        "humidity": 40.0,
        "receivedAt": "2026-10-19T14:15:01Z",
    }


class StubClient:
    def __init__(self, config, readings: Optional[List[Dict[str, Any]]] = None, error: Optional[str] = None) -> None:
        self.config = config
        self.readings = readings or []
        self.error = error
        self.requested: List[Optional[int]] = []

    async def fetch_recent(self, device_id: Optional[int] = None) -> List[Dict[str, Any]]:
        self.requested.append(device_id)
        if self.error:
            raise HistoricalFetchError(self.error)
        return self.readings


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


def _install_stub(monkeypatch, stub: StubClient) -> None:
    def factory(config):
        stub.config = config
        return stub

    monkeypatch.setattr("cli.app.ApiClient", factory)


def test_recent_lists_readings(monkeypatch, runner: CliRunner) -> None:
    stub = StubClient(config=None, readings=[_wire(2), _wire(1, device_id=3)])
    _install_stub(monkeypatch, stub)

    result = runner.invoke(app, ["--base-url", "http://telemetry:9000", "recent"])

    assert result.exit_code == 0
    assert "Readings (2)" in result.stdout
    assert "#2 device=1" in result.stdout
    assert "#1 device=3" in result.stdout
    assert stub.requested == [None]
    assert stub.config.base_url == "http://telemetry:9000"
    assert stub.config.live_url == "ws://telemetry:9000/ws/readings"


def test_recent_for_one_device(monkeypatch, runner: CliRunner) -> None:
    stub = StubClient(config=None)
    _install_stub(monkeypatch, stub)

    result = runner.invoke(app, ["recent", "--device", "7"])

    assert result.exit_code == 0
    assert "No readings stored yet." in result.stdout
    assert stub.requested == [7]


def test_recent_reports_fetch_failure(monkeypatch, runner: CliRunner) -> None:
    _install_stub(monkeypatch, StubClient(config=None, error="HTTP 500"))

    result = runner.invoke(app, ["recent"])

    assert result.exit_code == 1
    assert "Could not load readings: HTTP 500" in result.output


def test_watch_renders_history_and_live_status(monkeypatch, runner: CliRunner) -> None:
    _install_stub(monkeypatch, StubClient(config=None, readings=[_wire(2), _wire(1)]))
    urls: List[str] = []

    def fake_connector(url: str):
        urls.append(url)

        @asynccontextmanager
        async def connect():
            async def frames():
                yield json.dumps(_wire(3, device_id=2))
                await asyncio.sleep(10)

            yield frames()

        return connect

    monkeypatch.setattr("cli.app.websocket_connector", fake_connector)

    result = runner.invoke(app, ["watch", "--duration", "0.3"])

    assert result.exit_code == 0, result.output
    assert urls == ["ws://localhost:8000/ws/readings"]
    assert "System status" in result.stdout
    assert "live: connected" in result.stdout
    assert "devices: 2" in result.stdout
    assert "points: 3" in result.stdout
    assert "device 2: 1 points" in result.stdout


def test_watch_shows_live_feed_errors(monkeypatch, runner: CliRunner) -> None:
    _install_stub(monkeypatch, StubClient(config=None))

    def refusing_connector(url: str):
        @asynccontextmanager
        async def connect():
            raise OSError("connection refused")
            yield

        return connect

    monkeypatch.setattr("cli.app.websocket_connector", refusing_connector)

    result = runner.invoke(app, ["--reconnect-delay", "0.05", "watch", "--duration", "0.3"])

    assert result.exit_code == 0, result.output
    assert "error: live feed unavailable: connection refused" in result.stdout
    assert "live: connecting" in result.stdout


def test_config_derives_live_url_and_reads_environment(monkeypatch) -> None:
    monkeypatch.setenv("API_BASE_URL", "https://telemetry.example/")
    monkeypatch.setenv("LIVE_RECONNECT_DELAY", "not-a-number")

    config = load_config()

    assert config.base_url == "https://telemetry.example"
    assert config.live_url == "wss://telemetry.example/ws/readings"
    assert config.reconnect_delay == 3.0
    assert derive_live_url("http://localhost:8000") == "ws://localhost:8000/ws/readings"


def _client(handler) -> ApiClient:
    return ApiClient(CLIConfig(base_url="http://testserver"), transport=httpx.MockTransport(handler))


def test_api_client_fetches_recent_and_by_device() -> None:
    paths: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(200, json=[_wire(1), "junk"])

    client = _client(handler)

    assert asyncio.run(client.fetch_recent()) == [_wire(1)]
    asyncio.run(client.fetch_recent(4))
    assert paths == ["/api/readings/recent", "/api/readings/by-device/4"]


@pytest.mark.parametrize(
    "response, message",
    [
        (httpx.Response(500, json={"detail": "boom"}), "HTTP 500"),
        (httpx.Response(200, json={"not": "a list"}), "unexpected response payload"),
        (httpx.Response(200, content=b"<html>"), "response is not valid JSON"),
    ],
)
def test_api_client_maps_failures(response: httpx.Response, message: str) -> None:
    client = _client(lambda request: response)

    with pytest.raises(HistoricalFetchError, match=message):
        asyncio.run(client.fetch_recent())


def test_api_client_maps_connection_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(HistoricalFetchError, match="connection refused"):
        asyncio.run(_client(handler).fetch_recent())
