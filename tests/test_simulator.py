from __future__ import annotations

import json
import random
from datetime import datetime
from typing import List

import pytest
from typer.testing import CliRunner

from broker.mock_queue import MockQueueBroker
from models.records import ConnectionState
from services.errors import ConfigurationError, TransportError
from simulator.app import app
from simulator.config import SimulatorConfig, load_config
from simulator.generator import ReadingGenerator, build_generator
from simulator.publisher import ResilientPublisher

QUEUE = "notificacion_sensores"


class FlakyConnector:
    """Fails ``failures`` times, then hands out connections to ``broker``."""

    def __init__(self, broker: MockQueueBroker, failures: int) -> None:
        self.broker = broker
        self.failures = failures
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.failures:
            self.failures -= 1
            raise TransportError("connection refused")
        return self.broker.connect()


def _publisher(connector, sleeps: List[float]) -> ResilientPublisher:
    return ResilientPublisher(
        connector=connector,
        destination=QUEUE,
        initial_delay=1.0,
        multiplier=2.0,
        sleep=sleeps.append,
    )


def test_backoff_doubles_between_consecutive_failures() -> None:
    sleeps: List[float] = []
    connector = FlakyConnector(MockQueueBroker("memory"), failures=3)
    publisher = _publisher(connector, sleeps)

    publisher.ensure_connected()

    assert sleeps == [1.0, 2.0, 4.0]
    assert connector.calls == 4
    assert publisher.state is ConnectionState.connected
    assert publisher.last_error == "connection refused"


def test_state_listener_sees_every_transition() -> None:
    states: List[ConnectionState] = []
    publisher = _publisher(FlakyConnector(MockQueueBroker("memory"), failures=1), [])
    publisher.add_listener(states.append)

    publisher.ensure_connected()
    publisher.close()

    assert states == [
        ConnectionState.connecting,
        ConnectionState.backing_off,
        ConnectionState.connecting,
        ConnectionState.connected,
        ConnectionState.disconnected,
    ]


def test_publish_failure_backs_off_then_resumes() -> None:
    sleeps: List[float] = []
    broker = MockQueueBroker("memory")
    publisher = _publisher(FlakyConnector(broker, failures=0), sleeps)
    publisher.ensure_connected()
    publisher.publish("first")

    # Closing the underlying connection makes the next send fail.
    publisher._connection.close()  # type: ignore[union-attr]
    with pytest.raises(TransportError):
        publisher.publish("lost")
    assert publisher.state is ConnectionState.backing_off

    publisher.ensure_connected()
    publisher.publish("second")

    assert sleeps == [1.0]
    assert publisher.consecutive_failures == 0
    bodies = []
    while (delivery := broker.receive(QUEUE)) is not None:
        bodies.append(delivery.body)
    assert bodies == ["first", "second"]


def test_publish_requires_connection() -> None:
    publisher = _publisher(FlakyConnector(MockQueueBroker("memory"), failures=0), [])

    with pytest.raises(TransportError):
        publisher.publish("early")


def test_generated_sample_uses_wire_names_and_ranges() -> None:
    publisher = _publisher(FlakyConnector(MockQueueBroker("memory"), failures=0), [])
    generator = ReadingGenerator(
        device_id=4,
        publisher=publisher,
        interval_seconds=5,
        rng=random.Random(7),
        now=lambda: datetime(2026, 10, 19, 9, 5, 3),
    )

    for _ in range(50):
        sample = generator.build_sample()
        assert sample["fechaGeneración"] == "19/10/2026 09:05:03"
        assert sample["IdDispositivo"] == 4
        assert 18.0 <= sample["temperatura"] <= 34.0
        assert 30.0 <= sample["humedad"] <= 80.0
        assert round(sample["temperatura"], 2) == sample["temperatura"]


def test_generator_publishes_and_waits_the_interval() -> None:
    broker = MockQueueBroker("memory")
    sleeps: List[float] = []
    publisher = _publisher(FlakyConnector(broker, failures=1), sleeps)
    generator = ReadingGenerator(
        device_id=2,
        publisher=publisher,
        interval_seconds=5,
        rng=random.Random(1),
        sleep=sleeps.append,
    )

    generator.run(max_ticks=3)

    assert generator.published == 3
    assert broker.pending(QUEUE) == 3
    # One backoff before the first connection, then one interval per reading.
    assert sleeps == [1.0, 5, 5, 5]
    delivery = broker.receive(QUEUE)
    assert delivery is not None
    assert json.loads(delivery.body)["IdDispositivo"] == 2
    assert "fechaGeneración" in delivery.body


def test_load_config_reads_environment(monkeypatch) -> None:
    monkeypatch.setenv("DEVICE_ID", "9")
    monkeypatch.setenv("PUBLISH_INTERVAL_SECONDS", "0.5")
    monkeypatch.setenv("DESTINATION", "other_queue")

    config = load_config()

    assert config.device_id == 9
    assert config.interval_seconds == 0.5
    assert config.destination == "other_queue"
    assert load_config(device_id=3).device_id == 3


@pytest.mark.parametrize(
    "env",
    [
        {"PUBLISH_INTERVAL_SECONDS": "0"},
        {"PUBLISH_INTERVAL_SECONDS": "soon"},
        {"DEVICE_ID": "sensor-a"},
        {"BACKOFF_MULTIPLIER": "0.5"},
    ],
)
def test_load_config_rejects_invalid_values(monkeypatch, env) -> None:
    for name, value in env.items():
        monkeypatch.setenv(name, value)

    with pytest.raises(ConfigurationError):
        load_config()


def test_build_generator_refuses_in_memory_broker() -> None:
    with pytest.raises(ConfigurationError):
        build_generator(SimulatorConfig(broker_url="memory://"))


def test_run_command_publishes_into_spool(tmp_path) -> None:
    runner = CliRunner()
    spool = tmp_path / "queue"

    result = runner.invoke(
        app,
        ["run", "--device-id", "5", "--broker-url", str(spool), "--interval", "0.01", "--max-ticks", "2"],
    )

    assert result.exit_code == 0, result.output
    assert "Published 2 readings." in result.stdout
    assert MockQueueBroker("check", root_path=spool).pending(QUEUE) == 2


def test_run_command_exits_on_invalid_configuration(monkeypatch) -> None:
    monkeypatch.setenv("PUBLISH_INTERVAL_SECONDS", "-1")
    runner = CliRunner()

    result = runner.invoke(app, ["run", "--max-ticks", "1"])

    assert result.exit_code == 2
