from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Optional

from langchain_core.messages import HumanMessage

from src.agent.errors import SessionNotFoundError

from .models import MessageRecord, MessageRole, SessionRecord, TextPart, ToolCallPart, ToolResultPart
from .store import SQLiteSessionStore

if TYPE_CHECKING:
    from src.agent.gateway import ModelGateway

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGES = 20
DEFAULT_MAX_TOKENS = 10000
DEFAULT_KEEP_MESSAGES = 50
SUMMARY_UNAVAILABLE = "Session summary unavailable"

_CHARS_PER_TOKEN = 4
_DEFAULT_PROMPT = (
    "Summarise the conversation above concisely. Cover:\n"
    "1. The user's main goals\n"
    "2. Key discussion points and decisions\n"
    "3. The current state and next steps"
)


@dataclass(slots=True)
class CompactionStatus:
    needs_compaction: bool
    message_count: int
    token_count: int


@dataclass(slots=True)
class CompactionResult:
    session: SessionRecord
    summary: str
    original_message_count: int


def estimate_tokens(messages: Iterable[MessageRecord]) -> int:
    """Rough token estimate: about four characters per token of text and tool traffic."""
    total_chars = 0
    for message in messages:
        for part in message.parts:
            if isinstance(part, TextPart):
                total_chars += len(part.text)
            elif isinstance(part, ToolCallPart):
                total_chars += len(json.dumps(part.args, ensure_ascii=False, default=str))
            elif isinstance(part, ToolResultPart):
                total_chars += len(_as_text(part.output))
    return math.ceil(total_chars / _CHARS_PER_TOKEN)


async def compaction_status(
    store: SQLiteSessionStore,
    session_id: str,
    *,
    max_messages: int = DEFAULT_MAX_MESSAGES,
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> CompactionStatus:
    messages = await store.get_messages(session_id)
    tokens = estimate_tokens(messages)
    return CompactionStatus(
        needs_compaction=len(messages) >= max_messages or tokens >= max_tokens,
        message_count=len(messages),
        token_count=tokens,
    )


async def compact_session(
    store: SQLiteSessionStore,
    gateway: "ModelGateway",
    session_id: str,
    *,
    keep_messages: int = DEFAULT_KEEP_MESSAGES,
    prompt: Optional[str] = None,
) -> CompactionResult:
    """Summarise a session into a new child session.

    The most recent ``keep_messages`` messages are handed to the model together
    with the compaction prompt. The child session starts with a single system
    message carrying the summary; the parent session is left untouched.
    """
    if keep_messages < 1:
        raise ValueError("keep_messages must be positive")

    parent = await store.get_session(session_id)
    if parent is None:
        raise SessionNotFoundError(session_id)

    messages = await store.get_messages(session_id)
    recent = messages[-keep_messages:]

    summary = SUMMARY_UNAVAILABLE
    try:
        response = await gateway.complete(
            [HumanMessage(content=_build_prompt(recent, prompt or _DEFAULT_PROMPT))],
            [],
        )
        if response.text.strip():
            summary = response.text.strip()
    except Exception as exc:  # noqa: BLE001 - a failed summary still yields a usable child session
        logger.warning("Compaction summary failed for session %s: %s", session_id, exc)

    child = await store.create_session(
        title=f"Compacted: {parent.title or 'session'}",
        parent_id=session_id,
    )
    await store.append_message(
        session_id=child.id,
        role=MessageRole.SYSTEM,
        parts=[TextPart(text=summary)],
    )
    logger.info(
        "Compacted session %s (%d messages) into %s",
        session_id,
        len(messages),
        child.id,
    )
    stored = await store.get_session(child.id)
    return CompactionResult(
        session=stored or child,
        summary=summary,
        original_message_count=len(messages),
    )


def _build_prompt(messages: Iterable[MessageRecord], instructions: str) -> str:
    blocks: list[str] = []
    for message in messages:
        lines: list[str] = []
        for part in message.parts:
            if isinstance(part, TextPart) and part.text.strip():
                lines.append(part.text)
            elif isinstance(part, ToolCallPart):
                state = part.state.value
                lines.append(f"[Tool: {part.tool_name}] ({state})")
            elif isinstance(part, ToolResultPart):
                lines.append(f"[Tool result: {part.tool_name}] {_as_text(part.output)}")
        if lines:
            blocks.append(f"[{message.role.value}] " + "\n".join(lines))
    history = "\n\n".join(blocks)
    return f"{instructions}\n\n=== Conversation ===\n{history}\n\n=== End ===\n\nSummary:"


def _as_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)
