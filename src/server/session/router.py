from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status

from src.agent.errors import SessionBusyError
from src.agent.gateway import ModelGateway
from src.agent.runs import SessionRunManager
from src.config.configuration import Settings
from src.events.bus import EventBus
from src.events.types import SessionCreatedEvent, SessionDeletedEvent, SessionUpdatedEvent

from .compaction import compact_session, compaction_status
from .dependencies import get_event_bus, get_gateway, get_run_manager, get_session_store, get_settings
from .models import MessageRecord, Part, ReasoningPart, SessionRecord, TextPart, ToolCallPart, ToolResultPart
from .schemas import (
    CompactionStatusResponse,
    CompactRequest,
    CompactResponse,
    DeleteResponse,
    InterruptResponse,
    MessageListResponse,
    PromptRequest,
    PromptResponse,
    SessionCreateRequest,
    SessionCreateResponse,
    SessionDetail,
    SessionListResponse,
    SessionMessage,
    SessionPart,
    SessionSummary,
    SessionUpdateRequest,
)
from .store import SQLiteSessionStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


@router.get("", response_model=SessionListResponse)
async def list_sessions(
    store: SQLiteSessionStore = Depends(get_session_store),
    runs: SessionRunManager = Depends(get_run_manager),
) -> SessionListResponse:
    records = await store.list_sessions()
    return SessionListResponse(sessions=[_to_summary(record, runs) for record in records])


@router.post("", status_code=status.HTTP_201_CREATED, response_model=SessionCreateResponse)
async def create_session(
    payload: SessionCreateRequest,
    store: SQLiteSessionStore = Depends(get_session_store),
    bus: EventBus = Depends(get_event_bus),
    runs: SessionRunManager = Depends(get_run_manager),
) -> SessionCreateResponse:
    session = await store.create_session(title=payload.title)
    bus.publish(SessionCreatedEvent(session_id=session.id, title=session.title))

    initial_message = (payload.initial_message or "").strip()
    if initial_message:
        runs.start(session.id, initial_message)
    return SessionCreateResponse(session=_to_detail(session, [], runs))


@router.get("/{session_id}", response_model=SessionDetail)
async def get_session(
    session_id: str,
    store: SQLiteSessionStore = Depends(get_session_store),
    runs: SessionRunManager = Depends(get_run_manager),
) -> SessionDetail:
    session = await _require_session(store, session_id)
    messages = await store.get_messages(session_id)
    return _to_detail(session, messages, runs)


@router.patch("/{session_id}", response_model=SessionDetail)
async def update_session(
    session_id: str,
    payload: SessionUpdateRequest,
    store: SQLiteSessionStore = Depends(get_session_store),
    bus: EventBus = Depends(get_event_bus),
    runs: SessionRunManager = Depends(get_run_manager),
) -> SessionDetail:
    session = await _require_session(store, session_id)

    if payload.title is not None:
        session = await store.rename_session(session_id, payload.title)
        bus.publish(SessionUpdatedEvent(session_id=session_id, updates={"title": session.title}))

    messages = await store.get_messages(session_id)
    return _to_detail(session, messages, runs)


@router.delete("/{session_id}", response_model=DeleteResponse)
async def delete_session(
    session_id: str,
    store: SQLiteSessionStore = Depends(get_session_store),
    bus: EventBus = Depends(get_event_bus),
    runs: SessionRunManager = Depends(get_run_manager),
) -> DeleteResponse:
    await _require_session(store, session_id)
    runs.cancel(session_id, "Session deleted")
    await store.delete_session(session_id)
    bus.publish(SessionDeletedEvent(session_id=session_id))
    return DeleteResponse(success=True)


@router.get("/{session_id}/messages", response_model=MessageListResponse)
async def list_messages(
    session_id: str,
    store: SQLiteSessionStore = Depends(get_session_store),
) -> MessageListResponse:
    await _require_session(store, session_id)
    messages = await store.get_messages(session_id)
    return MessageListResponse(messages=[_to_message(message) for message in messages])


@router.post("/{session_id}/prompt", status_code=status.HTTP_202_ACCEPTED, response_model=PromptResponse)
async def prompt_session(
    session_id: str,
    payload: PromptRequest,
    store: SQLiteSessionStore = Depends(get_session_store),
    runs: SessionRunManager = Depends(get_run_manager),
) -> PromptResponse:
    await _require_session(store, session_id)
    try:
        runs.start(session_id, payload.content, tools=payload.tools)
    except SessionBusyError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return PromptResponse(success=True, session_id=session_id, message="Processing started")


@router.post("/{session_id}/interrupt", response_model=InterruptResponse)
async def interrupt_session(
    session_id: str,
    store: SQLiteSessionStore = Depends(get_session_store),
    runs: SessionRunManager = Depends(get_run_manager),
) -> InterruptResponse:
    await _require_session(store, session_id)
    interrupted = runs.cancel(session_id)
    return InterruptResponse(success=True, interrupted=interrupted)


@router.get("/{session_id}/compaction", response_model=CompactionStatusResponse)
async def get_compaction_status(
    session_id: str,
    store: SQLiteSessionStore = Depends(get_session_store),
    settings: Settings = Depends(get_settings),
) -> CompactionStatusResponse:
    await _require_session(store, session_id)
    current = await compaction_status(
        store,
        session_id,
        max_messages=settings.compaction_max_messages,
        max_tokens=settings.compaction_max_tokens,
    )
    return CompactionStatusResponse(
        needs_compaction=current.needs_compaction,
        message_count=current.message_count,
        token_count=current.token_count,
    )


@router.post("/{session_id}/compact", status_code=status.HTTP_201_CREATED, response_model=CompactResponse)
async def compact(
    session_id: str,
    payload: CompactRequest,
    store: SQLiteSessionStore = Depends(get_session_store),
    bus: EventBus = Depends(get_event_bus),
    runs: SessionRunManager = Depends(get_run_manager),
    gateway: ModelGateway = Depends(get_gateway),
) -> CompactResponse:
    await _require_session(store, session_id)
    if runs.is_running(session_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Session is busy; interrupt it before compacting",
        )
    result = await compact_session(
        store,
        gateway,
        session_id,
        keep_messages=payload.keep_messages,
        prompt=payload.prompt,
    )
    child = result.session
    bus.publish(SessionCreatedEvent(session_id=child.id, title=child.title))
    messages = await store.get_messages(child.id)
    return CompactResponse(
        session=_to_detail(child, messages, runs),
        summary=result.summary,
        original_message_count=result.original_message_count,
    )


async def _require_session(store: SQLiteSessionStore, session_id: str) -> SessionRecord:
    session = await store.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return session


def _to_summary(record: SessionRecord, runs: Optional[SessionRunManager] = None) -> SessionSummary:
    return SessionSummary(
        id=record.id,
        title=record.title,
        parent_id=record.parent_id,
        last_message_preview=record.last_message_preview,
        message_count=record.message_count,
        busy=runs.is_running(record.id) if runs is not None else False,
        updated_at=record.updated_at,
        created_at=record.created_at,
    )


def _to_part(part: Part) -> SessionPart:
    if isinstance(part, (TextPart, ReasoningPart)):
        return SessionPart(id=part.id, type=part.type.value, seq=part.seq, text=part.text)
    if isinstance(part, ToolCallPart):
        return SessionPart(
            id=part.id,
            type=part.type.value,
            seq=part.seq,
            tool_name=part.tool_name,
            call_id=part.call_id,
            args=part.args,
            state=part.state.value,
            error=part.error,
        )
    if isinstance(part, ToolResultPart):
        return SessionPart(
            id=part.id,
            type=part.type.value,
            seq=part.seq,
            tool_name=part.tool_name,
            call_id=part.call_id,
            output=part.output,
            success=part.success,
            error=part.error,
            metadata=part.metadata,
        )
    raise TypeError(f"Unsupported part type: {type(part).__name__}")


def _to_message(record: MessageRecord) -> SessionMessage:
    return SessionMessage(
        id=record.id,
        role=record.role.value,
        seq=record.seq,
        created_at=record.created_at,
        finish_reason=record.finish_reason,
        error=record.error,
        parts=[_to_part(part) for part in record.parts],
    )


def _to_detail(
    session: SessionRecord,
    messages: list[MessageRecord],
    runs: Optional[SessionRunManager] = None,
) -> SessionDetail:
    return SessionDetail(
        **_to_summary(session, runs).model_dump(),
        messages=[_to_message(message) for message in messages],
    )
