import json

import pytest

from src.events.bus import EventBus
from src.events.types import StreamTextEvent
from src.server.events import ConnectionRegistry, event_stream, format_frame


class FakeRequest:
    """Reports a disconnect after ``checks_before_disconnect`` polls."""

    def __init__(self, checks_before_disconnect: int) -> None:
        self.checks = 0
        self.checks_before_disconnect = checks_before_disconnect

    async def is_disconnected(self) -> bool:
        self.checks += 1
        return self.checks > self.checks_before_disconnect


def _text(session_id: str, delta: str) -> StreamTextEvent:
    return StreamTextEvent(session_id=session_id, message_id="m1", content=delta, delta=delta)


def _parse(frame: str) -> tuple[str, dict]:
    event_line, data_line = frame.rstrip("\n").split("\n")
    assert event_line.startswith("event: ")
    assert data_line.startswith("data: ")
    return event_line[len("event: ") :], json.loads(data_line[len("data: ") :])


def test_format_frame_uses_event_and_data_lines():
    frame = format_frame(_text("s1", "hé"))

    assert frame.endswith("\n\n")
    event_type, data = _parse(frame)
    assert event_type == "stream.text"
    assert data["sessionId"] == "s1"
    assert data["delta"] == "hé"


@pytest.mark.asyncio
async def test_stream_starts_with_connected_and_relays_session_events():
    bus = EventBus()
    registry = ConnectionRegistry(bus, queue_size=10)
    connection = registry.open("s1")
    assert registry.connection_count("s1") == 1

    bus.publish(_text("s1", "mine"))
    bus.publish(_text("s2", "not mine"))

    frames = [frame async for frame in event_stream(connection, FakeRequest(1), heartbeat_interval=60)]
    parsed = [_parse(frame) for frame in frames]

    assert [event_type for event_type, _ in parsed] == ["server.connected", "stream.text"]
    assert parsed[0][1]["connectionId"] == connection.id
    assert parsed[1][1]["delta"] == "mine"

    assert connection.closed
    assert registry.connection_count("s1") == 0
    assert bus.subscriber_count() == 0


@pytest.mark.asyncio
async def test_heartbeats_are_sent_while_idle():
    bus = EventBus()
    registry = ConnectionRegistry(bus)
    connection = registry.open("s1")

    frames = [frame async for frame in event_stream(connection, FakeRequest(3), heartbeat_interval=0.01)]
    types = [_parse(frame)[0] for frame in frames]

    assert types[0] == "server.connected"
    assert "server.heartbeat" in types


@pytest.mark.asyncio
async def test_slow_consumer_drops_oldest_events():
    bus = EventBus()
    registry = ConnectionRegistry(bus, queue_size=2)
    connection = registry.open(None)

    for delta in ("1", "2", "3"):
        bus.publish(_text("s1", delta))

    assert connection.dropped == 1
    assert [connection.queue.get_nowait().delta for _ in range(2)] == ["2", "3"]
    connection.close()


def test_close_is_idempotent_and_counts_are_tracked():
    bus = EventBus()
    registry = ConnectionRegistry(bus)
    first = registry.open("s1")
    registry.open("s1")
    registry.open(None)

    assert registry.counts() == {"s1": 2, "*": 1}
    assert len(registry) == 3

    assert first.close() is True
    assert first.close() is False
    assert registry.counts() == {"s1": 1, "*": 1}

    registry.close_all()
    assert len(registry) == 0
    assert bus.subscriber_count() == 0
