# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from .bus import EventBus, Subscription, topic_matches
from .types import (
    BaseEvent,
    Event,
    MessageCreatedEvent,
    ServerConnectedEvent,
    ServerHeartbeatEvent,
    SessionCreatedEvent,
    SessionDeletedEvent,
    SessionUpdatedEvent,
    StreamCompletedEvent,
    StreamErrorEvent,
    StreamReasoningEvent,
    StreamStartEvent,
    StreamTextEvent,
    StreamToolCallEvent,
    StreamToolResultEvent,
    TokenUsage,
    parse_event,
)

__all__ = [
    "BaseEvent",
    "Event",
    "EventBus",
    "MessageCreatedEvent",
    "ServerConnectedEvent",
    "ServerHeartbeatEvent",
    "SessionCreatedEvent",
    "SessionDeletedEvent",
    "SessionUpdatedEvent",
    "StreamCompletedEvent",
    "StreamErrorEvent",
    "StreamReasoningEvent",
    "StreamStartEvent",
    "StreamTextEvent",
    "StreamToolCallEvent",
    "StreamToolResultEvent",
    "Subscription",
    "TokenUsage",
    "parse_event",
    "topic_matches",
]
