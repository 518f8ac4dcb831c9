# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""Event definitions published on the bus and relayed to stream clients.

Each event is a pydantic model with a literal ``type`` discriminator. On the
wire the fields are camelCase (``sessionId``, ``messageId``, ``toolCallId``).
"""

from __future__ import annotations

import time
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    return int(time.time() * 1000)


class TokenUsage(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class BaseEvent(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: str
    session_id: Optional[str] = None
    timestamp: int = Field(default_factory=now_ms)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class StreamStartEvent(BaseEvent):
    type: Literal["stream.start"] = "stream.start"
    message_id: str
    model: str


class StreamTextEvent(BaseEvent):
    type: Literal["stream.text"] = "stream.text"
    message_id: str
    content: str  # accumulated for the current model call
    delta: str


class StreamReasoningEvent(BaseEvent):
    type: Literal["stream.reasoning"] = "stream.reasoning"
    message_id: str
    content: str
    delta: str


class StreamToolCallEvent(BaseEvent):
    type: Literal["stream.tool.call"] = "stream.tool.call"
    message_id: str
    tool_name: str
    tool_args: dict[str, Any]
    tool_call_id: str


class StreamToolResultEvent(BaseEvent):
    type: Literal["stream.tool.result"] = "stream.tool.result"
    message_id: str
    tool_name: str
    tool_call_id: str
    result: Any = None
    success: bool
    error: Optional[str] = None


class StreamCompletedEvent(BaseEvent):
    type: Literal["stream.completed"] = "stream.completed"
    message_id: str
    usage: Optional[TokenUsage] = None


class StreamErrorEvent(BaseEvent):
    type: Literal["stream.error"] = "stream.error"
    message_id: Optional[str] = None
    error: str
    code: Optional[str] = None


class MessageCreatedEvent(BaseEvent):
    type: Literal["message.created"] = "message.created"
    message_id: str
    role: str
    content: str


class SessionCreatedEvent(BaseEvent):
    type: Literal["session.created"] = "session.created"
    title: Optional[str] = None


class SessionUpdatedEvent(BaseEvent):
    type: Literal["session.updated"] = "session.updated"
    updates: dict[str, Any] = Field(default_factory=dict)


class SessionDeletedEvent(BaseEvent):
    type: Literal["session.deleted"] = "session.deleted"


class ServerConnectedEvent(BaseEvent):
    type: Literal["server.connected"] = "server.connected"
    connection_id: str


class ServerHeartbeatEvent(BaseEvent):
    type: Literal["server.heartbeat"] = "server.heartbeat"


Event = Annotated[
    Union[
        StreamStartEvent,
        StreamTextEvent,
        StreamReasoningEvent,
        StreamToolCallEvent,
        StreamToolResultEvent,
        StreamCompletedEvent,
        StreamErrorEvent,
        MessageCreatedEvent,
        SessionCreatedEvent,
        SessionUpdatedEvent,
        SessionDeletedEvent,
        ServerConnectedEvent,
        ServerHeartbeatEvent,
    ],
    Field(discriminator="type"),
]

EVENT_ADAPTER: TypeAdapter[Event] = TypeAdapter(Event)


def parse_event(data: dict[str, Any]) -> BaseEvent:
    return EVENT_ADAPTER.validate_python(data)
