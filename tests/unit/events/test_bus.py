import asyncio

import pytest

from src.events.bus import EventBus, topic_matches
from src.events.types import (
    SessionDeletedEvent,
    StreamCompletedEvent,
    StreamTextEvent,
    StreamToolCallEvent,
    TokenUsage,
    parse_event,
)


def _text(session_id="s1", delta="hi"):
    return StreamTextEvent(session_id=session_id, message_id="m1", content=delta, delta=delta)


def test_failing_subscriber_does_not_block_others():
    bus = EventBus()
    received = []

    def broken(event):
        raise RuntimeError("subscriber bug")

    bus.subscribe("stream.text", broken)
    bus.subscribe("stream.text", received.append)

    delivered = bus.publish(_text())

    assert delivered == 2
    assert len(received) == 1
    assert bus.stats()["failures"] == 1


def test_session_filter_and_global_channel():
    bus = EventBus()
    session_events, global_events = [], []
    bus.subscribe_session("s1", session_events.append)
    bus.subscribe_global(global_events.append)

    bus.publish(_text("s1"))
    bus.publish(_text("s2"))

    assert [event.session_id for event in session_events] == ["s1"]
    assert [event.session_id for event in global_events] == ["s1", "s2"]


def test_topic_patterns():
    assert topic_matches("*", "stream.text")
    assert topic_matches("stream.*", "stream.tool.call")
    assert topic_matches("stream.tool.*", "stream.tool.result")
    assert not topic_matches("stream.tool.*", "stream.text")
    assert not topic_matches("stream.text", "stream.textual")


def test_unsubscribe_is_idempotent():
    bus = EventBus()
    received = []
    subscription = bus.subscribe("stream.text", received.append)

    assert subscription.close() is True
    assert subscription.close() is False
    assert bus.unsubscribe(subscription) is False
    assert bus.publish(_text()) == 0
    assert received == []
    assert bus.subscriber_count() == 0


def test_subscriber_may_unsubscribe_during_delivery():
    bus = EventBus()
    received = []

    def once(event):
        received.append(event)
        subscription.close()

    subscription = bus.subscribe_global(once)
    bus.publish(_text())
    bus.publish(_text())

    assert len(received) == 1


@pytest.mark.asyncio
async def test_coroutine_handlers_run_in_background():
    bus = EventBus()
    received = []

    async def slow(event):
        await asyncio.sleep(0)
        received.append(event.type)

    async def failing(event):
        raise ValueError("nope")

    bus.subscribe("session.deleted", slow)
    bus.subscribe("session.deleted", failing)
    bus.publish(SessionDeletedEvent(session_id="s1"))
    await bus.drain()

    assert received == ["session.deleted"]
    assert bus.stats()["failures"] == 1
    assert bus.stats()["pending"] == 0


def test_wire_format_is_camel_case_and_round_trips():
    event = StreamToolCallEvent(
        session_id="s1",
        message_id="m1",
        tool_name="glob",
        tool_args={"pattern": "*"},
        tool_call_id="call_1",
    )
    wire = event.to_wire()

    assert wire["type"] == "stream.tool.call"
    assert wire["sessionId"] == "s1"
    assert wire["toolCallId"] == "call_1"
    assert parse_event(wire) == event

    completed = StreamCompletedEvent(session_id="s1", message_id="m1", usage=TokenUsage(total_tokens=7))
    assert completed.to_wire()["usage"]["totalTokens"] == 7
