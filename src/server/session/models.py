from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union
from uuid import uuid4


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    SYSTEM = "system"


class PartType(str, Enum):
    TEXT = "text"
    REASONING = "reasoning"
    TOOL_CALL = "tool-call"
    TOOL_RESULT = "tool-result"


class ToolCallState(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not ToolCallState.PENDING


def _new_id() -> str:
    return uuid4().hex


@dataclass(slots=True)
class TextPart:
    text: str
    id: str = field(default_factory=_new_id)
    seq: int = 0
    type: PartType = field(default=PartType.TEXT, init=False)


@dataclass(slots=True)
class ReasoningPart:
    text: str
    id: str = field(default_factory=_new_id)
    seq: int = 0
    type: PartType = field(default=PartType.REASONING, init=False)


@dataclass(slots=True)
class ToolCallPart:
    tool_name: str
    call_id: str
    args: dict[str, Any]
    state: ToolCallState = ToolCallState.PENDING
    error: Optional[str] = None
    id: str = field(default_factory=_new_id)
    seq: int = 0
    type: PartType = field(default=PartType.TOOL_CALL, init=False)


@dataclass(slots=True)
class ToolResultPart:
    call_id: str
    tool_name: str
    output: Any
    success: bool
    error: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    id: str = field(default_factory=_new_id)
    seq: int = 0
    type: PartType = field(default=PartType.TOOL_RESULT, init=False)


Part = Union[TextPart, ReasoningPart, ToolCallPart, ToolResultPart]


@dataclass(slots=True)
class ToolCallUpdate:
    """The single post-insert mutation a part accepts: a tool call reaching a terminal state."""

    state: ToolCallState
    error: Optional[str] = None


@dataclass(slots=True)
class SessionRecord:
    id: str
    title: Optional[str]
    created_at: datetime
    updated_at: datetime
    message_count: int
    last_message_preview: Optional[str]
    parent_id: Optional[str] = None


@dataclass(slots=True)
class MessageRecord:
    id: str
    session_id: str
    role: MessageRole
    seq: int
    created_at: datetime
    parts: list[Part] = field(default_factory=list)
    finish_reason: Optional[str] = None
    error: Optional[str] = None

    def text(self) -> str:
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    def tool_calls(self) -> list[ToolCallPart]:
        return [part for part in self.parts if isinstance(part, ToolCallPart)]
