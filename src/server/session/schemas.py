from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class SessionPart(BaseModel):
    id: str
    type: str
    seq: int
    text: Optional[str] = None
    tool_name: Optional[str] = None
    call_id: Optional[str] = None
    args: Optional[dict[str, Any]] = None
    state: Optional[str] = None
    output: Any = None
    success: Optional[bool] = None
    error: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class SessionMessage(BaseModel):
    id: str
    role: str
    seq: int
    created_at: datetime
    finish_reason: Optional[str] = None
    error: Optional[str] = None
    parts: list[SessionPart] = Field(default_factory=list)


class SessionSummary(BaseModel):
    id: str
    title: Optional[str] = None
    parent_id: Optional[str] = None
    last_message_preview: Optional[str] = None
    message_count: int = 0
    busy: bool = False
    updated_at: datetime
    created_at: datetime


class SessionDetail(SessionSummary):
    messages: list[SessionMessage] = Field(default_factory=list)


def _clean_title(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    value = value.strip()
    if not value:
        return None
    if len(value) > 40:
        raise ValueError("Title must be 40 characters or fewer")
    return value


class SessionCreateRequest(BaseModel):
    title: Optional[str] = Field(default=None, description="Optional session title.")
    initial_message: Optional[str] = Field(
        default=None,
        description="Optional initial user message; when given, the agent starts working on it.",
    )

    @field_validator("title")
    @classmethod
    def validate_title_length(cls, value: Optional[str]) -> Optional[str]:
        return _clean_title(value)


class SessionCreateResponse(BaseModel):
    session: SessionDetail


class SessionListResponse(BaseModel):
    sessions: list[SessionSummary]


class SessionUpdateRequest(BaseModel):
    title: Optional[str] = Field(default=None, description="Manual session title override.")

    @field_validator("title")
    @classmethod
    def validate_title_length(cls, value: Optional[str]) -> Optional[str]:
        return _clean_title(value)


class MessageListResponse(BaseModel):
    messages: list[SessionMessage]


class PromptRequest(BaseModel):
    content: str = Field(min_length=1, description="The user message to hand to the agent.")
    tools: Optional[list[str]] = Field(
        default=None,
        description="Restrict the run to these tools. Defaults to every registered tool.",
    )

    @field_validator("content")
    @classmethod
    def validate_content(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Content must not be blank")
        return value


class PromptResponse(BaseModel):
    success: bool
    session_id: str
    message: str


class InterruptResponse(BaseModel):
    success: bool
    interrupted: bool


class DeleteResponse(BaseModel):
    success: bool


class CompactRequest(BaseModel):
    keep_messages: int = Field(default=50, ge=1, description="How many recent messages the summary covers.")
    prompt: Optional[str] = Field(default=None, description="Custom summarisation instructions.")


class CompactResponse(BaseModel):
    session: SessionDetail
    summary: str
    original_message_count: int


class CompactionStatusResponse(BaseModel):
    needs_compaction: bool
    message_count: int
    token_count: int
