from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, List

from app.hub import ReadingHub
from app.schemas import SensorReadingRecord


class FakeSocket:
    def __init__(self, fail: bool = False, delay: float = 0.0) -> None:
        self.fail = fail
        self.delay = delay
        self.sent: List[Any] = []

    async def send_json(self, payload: Any) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(payload)


def _record() -> SensorReadingRecord:
    moment = datetime(2026, 10, 19, 14, 15, tzinfo=timezone.utc)
    return SensorReadingRecord(
        id=1,
        generated_at=moment,
        device_id=3,
        temperature=24.5,
        humidity=55.0,
        received_at=moment,
    )


def test_broadcast_reaches_every_subscriber_and_drops_dead_ones() -> None:
    hub = ReadingHub(send_timeout_s=0.05)
    healthy, broken, stalled = FakeSocket(), FakeSocket(fail=True), FakeSocket(delay=1.0)

    async def scenario() -> int:
        for socket in (healthy, broken, stalled):
            await hub.add(socket)  # type: ignore[arg-type]
        await hub.broadcast(_record().to_wire())
        return await hub.subscriber_count()

    remaining = asyncio.run(scenario())

    assert remaining == 1
    assert healthy.sent == [
        {
            "id": 1,
            "generatedAt": "2026-10-19T14:15:00Z",
            "deviceId": 3,
            "temperature": 24.5,
            "humidity": 55.0,
            "receivedAt": "2026-10-19T14:15:00Z",
        }
    ]


def test_publish_from_another_thread_is_scheduled_on_the_bound_loop() -> None:
    hub = ReadingHub()
    socket = FakeSocket()

    async def scenario() -> None:
        hub.bind(asyncio.get_running_loop())
        await hub.add(socket)  # type: ignore[arg-type]
        await asyncio.to_thread(hub.publish, _record())
        for _ in range(100):
            if socket.sent:
                return
            await asyncio.sleep(0.01)

    asyncio.run(scenario())

    assert [payload["deviceId"] for payload in socket.sent] == [3]


def test_publish_without_loop_is_a_no_op() -> None:
    ReadingHub().publish(_record())
