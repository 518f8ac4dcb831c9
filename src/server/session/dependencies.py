from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Depends, Request

from src.events.bus import EventBus

from .store import SQLiteSessionStore

if TYPE_CHECKING:
    from src.agent.gateway import ModelGateway
    from src.agent.runs import SessionRunManager
    from src.config.configuration import Settings
    from src.context import AgentContext


def get_context(request: Request) -> "AgentContext":
    context = getattr(request.app.state, "context", None)
    if context is None:
        raise RuntimeError("Agent context has not been initialised")
    return context


def get_session_store(context=Depends(get_context)) -> SQLiteSessionStore:
    return context.store


def get_event_bus(context=Depends(get_context)) -> EventBus:
    return context.bus


def get_run_manager(context=Depends(get_context)) -> "SessionRunManager":
    return context.runs


def get_gateway(context=Depends(get_context)) -> "ModelGateway":
    return context.gateway


def get_settings(context=Depends(get_context)) -> "Settings":
    return context.settings
