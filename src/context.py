# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""Runtime wiring for the agent service.

``AgentContext`` owns every long-lived object: the session store, event bus,
tool registry, model gateway, loop, run manager and stream connections. It is
built once per application and handed to request handlers through
``app.state``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterable, Optional, Sequence

from langchain_core.messages import BaseMessage
from langchain_openai import ChatOpenAI

from src.agent.errors import GatewayError
from src.agent.gateway import BaseGateway, Chunk, LangChainGateway, ModelGateway
from src.agent.loop import AgentLoop
from src.agent.runs import SessionRunManager
from src.agent.tools import ToolRegistry, ToolSpec
from src.config.configuration import Settings
from src.events.bus import EventBus
from src.server.events import ConnectionRegistry
from src.server.session.store import SQLiteSessionStore
from src.tools import default_tools

logger = logging.getLogger(__name__)


class UnconfiguredGateway(BaseGateway):
    """Stands in when no model is configured; every call fails cleanly."""

    model_name = "unconfigured"

    async def stream(
        self,
        history: Sequence[BaseMessage],
        tools: Sequence[dict[str, Any]],
    ) -> AsyncIterator[Chunk]:
        raise GatewayError("No model configured. Set MODEL_NAME to enable the agent.")
        yield  # pragma: no cover


def build_default_gateway(settings: Settings) -> ModelGateway:
    if not settings.model_name:
        logger.warning("MODEL_NAME is not set; prompts will fail until a model is configured")
        return UnconfiguredGateway()

    kwargs: dict[str, Any] = {"model": settings.model_name, "streaming": True}
    if settings.model_base_url:
        kwargs["base_url"] = settings.model_base_url
    if settings.model_api_key:
        kwargs["api_key"] = settings.model_api_key
    model = ChatOpenAI(**kwargs)
    logger.info("Using model %s", settings.model_name)
    return LangChainGateway(model, model_name=settings.model_name)


@dataclass
class AgentContext:
    settings: Settings
    store: SQLiteSessionStore
    bus: EventBus
    registry: ToolRegistry
    gateway: ModelGateway
    loop: AgentLoop
    runs: SessionRunManager
    connections: ConnectionRegistry

    @classmethod
    def build(
        cls,
        settings: Optional[Settings] = None,
        *,
        gateway: Optional[ModelGateway] = None,
        tools: Optional[Iterable[ToolSpec]] = None,
    ) -> "AgentContext":
        settings = settings or Settings.from_env()
        store = SQLiteSessionStore(settings.session_db_path)
        bus = EventBus()
        registry = ToolRegistry(default_tools() if tools is None else tools)
        gateway = gateway or build_default_gateway(settings)
        loop = AgentLoop(
            store,
            bus,
            gateway,
            registry,
            settings.loop,
            working_directory=settings.working_directory,
            title_gateway=gateway,
        )
        return cls(
            settings=settings,
            store=store,
            bus=bus,
            registry=registry,
            gateway=gateway,
            loop=loop,
            runs=SessionRunManager(loop),
            connections=ConnectionRegistry(bus, settings.event_queue_size),
        )

    async def start(self) -> None:
        await self.store.init()
        logger.info(
            "Agent context ready (db=%s, tools=%s)",
            self.store.db_path,
            ", ".join(self.registry.names()) or "none",
        )

    async def aclose(self) -> None:
        await self.runs.shutdown()
        self.connections.close_all()
        await self.bus.drain()
        self.bus.clear()
        await self.store.close()
