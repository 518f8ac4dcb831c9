# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.agent.errors import PersistenceError, SessionBusyError, SessionNotFoundError
from src.config.configuration import Settings
from src.context import AgentContext
from src.server.events import router as events_router
from src.server.session.router import router as session_router

logger = logging.getLogger(__name__)

INTERNAL_SERVER_ERROR_DETAIL = "Internal Server Error"


def create_app(context: Optional[AgentContext] = None) -> FastAPI:
    """Build the HTTP application around an agent context.

    Without an explicit context one is built from the environment when the
    application starts.
    """
    settings = context.settings if context is not None else Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        agent_context = context or AgentContext.build(settings)
        await agent_context.start()
        app.state.context = agent_context
        try:
            yield
        finally:
            await agent_context.aclose()
            app.state.context = None

    app = FastAPI(
        title="Agent Session API",
        description="Agent loop, session history and live event streams",
        version="0.1.0",
        lifespan=lifespan,
    )

    allowed_origins = list(settings.allowed_origins)
    logger.info(f"Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(session_router)
    app.include_router(events_router)

    @app.exception_handler(SessionNotFoundError)
    async def _session_not_found(_: Request, exc: SessionNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(SessionBusyError)
    async def _session_busy(_: Request, exc: SessionBusyError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(PersistenceError)
    async def _persistence_failed(_: Request, exc: PersistenceError) -> JSONResponse:
        logger.error("Persistence failure while handling request: %s", exc)
        return JSONResponse(status_code=500, content={"detail": INTERNAL_SERVER_ERROR_DETAIL})

    @app.get("/api/health")
    async def health(request: Request) -> dict:
        agent_context: Optional[AgentContext] = getattr(request.app.state, "context", None)
        if agent_context is None:
            return {"status": "starting"}
        return {
            "status": "ok",
            "model": agent_context.gateway.model_name,
            "tools": agent_context.registry.names(),
            "activeRuns": agent_context.runs.active_sessions(),
        }

    return app


def __getattr__(name: str):
    # ``uvicorn src.server.app:app`` builds the default application on first access.
    if name == "app":
        return create_app()
    raise AttributeError(name)
