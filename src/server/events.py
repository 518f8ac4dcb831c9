# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""Server-sent event fan-out from the event bus to HTTP clients."""

import asyncio
import json
import logging
from collections import Counter
from typing import Any, AsyncIterator, Optional, Protocol
from uuid import uuid4

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from src.events.bus import EventBus, Subscription
from src.events.types import BaseEvent, ServerConnectedEvent, ServerHeartbeatEvent
from src.server.session.dependencies import get_context

logger = logging.getLogger(__name__)

GLOBAL_STREAM = "*"
DISCONNECT_POLL_INTERVAL = 1.0


class DisconnectAware(Protocol):
    async def is_disconnected(self) -> bool: ...


def format_frame(event: BaseEvent) -> str:
    try:
        json_data = json.dumps(event.to_wire(), ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        logger.error("Error serializing %s event: %s", event.type, exc)
        json_data = json.dumps({"error": "Serialization failed"}, ensure_ascii=False)
        return f"event: error\ndata: {json_data}\n\n"
    return f"event: {event.type}\ndata: {json_data}\n\n"


class StreamConnection:
    """One open event stream: a bounded queue fed by a bus subscription.

    When the client falls behind, the oldest queued frame is dropped so the
    publisher never blocks.
    """

    def __init__(self, registry: "ConnectionRegistry", session_id: Optional[str], queue_size: int) -> None:
        self.id = uuid4().hex
        self.session_id = session_id
        self.queue: asyncio.Queue[BaseEvent] = asyncio.Queue(maxsize=queue_size)
        self.dropped = 0
        self.subscription: Optional[Subscription] = None
        self._registry = registry
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, event: BaseEvent) -> None:
        if self._closed:
            return
        while True:
            try:
                self.queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                self.queue.get_nowait()
                self.dropped += 1
                if self.dropped == 1 or self.dropped % 100 == 0:
                    logger.warning(
                        "Event stream %s is falling behind; dropped %d event(s)",
                        self.id,
                        self.dropped,
                    )

    def close(self) -> bool:
        if self._closed:
            return False
        self._closed = True
        if self.subscription is not None:
            self.subscription.close()
        self._registry._release(self)
        return True


class ConnectionRegistry:
    def __init__(self, bus: EventBus, queue_size: int = 1000) -> None:
        self._bus = bus
        self._queue_size = queue_size
        self._connections: dict[str, StreamConnection] = {}

    def open(self, session_id: Optional[str] = None) -> StreamConnection:
        key = session_id or GLOBAL_STREAM
        existing = self.connection_count(session_id)
        if session_id and existing:
            logger.info("Client reconnected to session %s (%d active connection(s))", session_id, existing)

        connection = StreamConnection(self, session_id, self._queue_size)
        if session_id:
            connection.subscription = self._bus.subscribe_session(session_id, connection.offer)
        else:
            connection.subscription = self._bus.subscribe_global(connection.offer)
        self._connections[connection.id] = connection
        logger.info("Opened event stream %s for %s", connection.id, key)
        return connection

    def connection_count(self, session_id: Optional[str] = None) -> int:
        return sum(1 for connection in self._connections.values() if connection.session_id == session_id)

    def counts(self) -> dict[str, int]:
        return dict(Counter(connection.session_id or GLOBAL_STREAM for connection in self._connections.values()))

    def __len__(self) -> int:
        return len(self._connections)

    def close_all(self) -> None:
        for connection in list(self._connections.values()):
            connection.close()

    def _release(self, connection: StreamConnection) -> None:
        if self._connections.pop(connection.id, None) is not None:
            logger.info(
                "Closed event stream %s for %s (dropped %d)",
                connection.id,
                connection.session_id or GLOBAL_STREAM,
                connection.dropped,
            )


async def event_stream(
    connection: StreamConnection,
    request: DisconnectAware,
    heartbeat_interval: float,
) -> AsyncIterator[str]:
    """Yield SSE frames for a connection until the client goes away.

    The first frame is always ``server.connected``. Heartbeats are emitted on a
    fixed deadline whether or not other traffic flowed in between.
    """
    loop = asyncio.get_running_loop()
    try:
        yield format_frame(ServerConnectedEvent(session_id=connection.session_id, connection_id=connection.id))
        next_heartbeat = loop.time() + heartbeat_interval
        while True:
            if await request.is_disconnected():
                break
            timeout = min(max(next_heartbeat - loop.time(), 0.0), DISCONNECT_POLL_INTERVAL)
            try:
                event = await asyncio.wait_for(connection.queue.get(), timeout=timeout)
            except asyncio.TimeoutError:
                event = None
            if event is not None:
                yield format_frame(event)
            if loop.time() >= next_heartbeat:
                yield format_frame(ServerHeartbeatEvent(session_id=connection.session_id))
                next_heartbeat = loop.time() + heartbeat_interval
    finally:
        connection.close()


router = APIRouter(prefix="/api/events", tags=["events"])


@router.get("")
async def stream_events(
    request: Request,
    session_id: Optional[str] = Query(default=None, alias="sessionId"),
    context: Any = Depends(get_context),
):
    connection = context.connections.open(session_id)
    return StreamingResponse(
        event_stream(connection, request, context.settings.heartbeat_interval),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/connections")
async def list_connections(context: Any = Depends(get_context)) -> dict[str, Any]:
    return {
        "total": len(context.connections),
        "sessions": context.connections.counts(),
        "subscribers": context.bus.stats(),
    }
