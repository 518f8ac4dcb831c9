# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""The agent execution loop.

One ``run`` handles one user turn: the user message and one assistant message
are persisted, then model calls and tool invocations alternate until the model
answers with plain text, fails, or the caller cancels. Every part is written to
the session store before the event describing it is published.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Optional, Sequence

from src.config.configuration import LoopConfig
from src.events.bus import EventBus
from src.events.types import (
    BaseEvent,
    MessageCreatedEvent,
    SessionUpdatedEvent,
    StreamCompletedEvent,
    StreamErrorEvent,
    StreamReasoningEvent,
    StreamStartEvent,
    StreamTextEvent,
    StreamToolCallEvent,
    StreamToolResultEvent,
    TokenUsage,
)
from src.server.session.models import (
    MessageRole,
    Part,
    ReasoningPart,
    TextPart,
    ToolCallPart,
    ToolCallState,
    ToolCallUpdate,
    ToolResultPart,
)
from src.server.session.store import SQLiteSessionStore
from src.server.session.title import ensure_session_title

from .cancellation import CancellationToken
from .doom_loop import DoomLoopTracker
from .errors import DoomLoopRejection, GatewayError, PersistenceError, SessionNotFoundError
from .gateway import (
    Chunk,
    Completion,
    GatewayResponse,
    ModelGateway,
    ReasoningDelta,
    StreamFailure,
    TextDelta,
    ToolRequest,
)
from .history import build_history
from .tools import ToolContext, ToolRegistry, ToolResult

logger = logging.getLogger(__name__)

_EXHAUSTED = object()


class LoopStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class LoopOutcome:
    status: LoopStatus
    session_id: str
    message_id: Optional[str]
    text: str = ""
    error: Optional[str] = None
    error_code: Optional[str] = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    iterations: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status is LoopStatus.COMPLETED


@dataclass
class _RunState:
    session_id: str
    cancel: CancellationToken
    tracker: DoomLoopTracker
    working_directory: str
    tool_names: Optional[list[str]]
    message_id: Optional[str] = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    iterations: int = 0
    attempt_chunks: int = 0

    def outcome(self, status: LoopStatus, **kwargs: Any) -> LoopOutcome:
        return LoopOutcome(
            status=status,
            session_id=self.session_id,
            message_id=self.message_id,
            usage=self.usage,
            iterations=self.iterations,
            **kwargs,
        )


class _RunCancelled(Exception):
    pass


class AgentLoop:
    def __init__(
        self,
        store: SQLiteSessionStore,
        bus: EventBus,
        gateway: ModelGateway,
        registry: ToolRegistry,
        config: Optional[LoopConfig] = None,
        *,
        working_directory: str = ".",
        title_gateway: Optional[ModelGateway] = None,
    ) -> None:
        self._store = store
        self._bus = bus
        self._gateway = gateway
        self._registry = registry
        self._config = config or LoopConfig()
        self._working_directory = working_directory
        self._title_gateway = title_gateway

    @property
    def config(self) -> LoopConfig:
        return self._config

    async def run(
        self,
        session_id: str,
        user_input: str,
        *,
        tools: Optional[Sequence[str]] = None,
        cancel: Optional[CancellationToken] = None,
        working_directory: Optional[str] = None,
    ) -> LoopOutcome:
        """Run one user turn to completion, failure or cancellation.

        ``tools`` restricts the advertised tools to the given names; by default
        every registered tool is available. Raises ``SessionNotFoundError`` when
        the session does not exist; every other failure is reported through the
        returned outcome and a ``stream.error`` event.
        """
        if await self._store.get_session(session_id) is None:
            raise SessionNotFoundError(session_id)

        state = _RunState(
            session_id=session_id,
            cancel=cancel or CancellationToken(),
            tracker=DoomLoopTracker(self._config.doom_loop_threshold, self._config.doom_loop_window),
            working_directory=working_directory or self._working_directory,
            tool_names=list(tools) if tools is not None else None,
        )

        try:
            user_message = await self._store.append_message(
                session_id=session_id,
                role=MessageRole.USER,
                parts=[TextPart(text=user_input)],
            )
            self._publish(
                MessageCreatedEvent(
                    session_id=session_id,
                    message_id=user_message.id,
                    role=MessageRole.USER.value,
                    content=user_input,
                )
            )
            assistant = await self._store.append_message(session_id=session_id, role=MessageRole.ASSISTANT)
            state.message_id = assistant.id
            self._publish(
                StreamStartEvent(session_id=session_id, message_id=assistant.id, model=self._gateway.model_name)
            )
            return await self._iterate(state)
        except PersistenceError as exc:
            logger.error("Persistence failure in session %s: %s", session_id, exc)
            self._publish(
                StreamErrorEvent(
                    session_id=session_id,
                    message_id=state.message_id,
                    error=str(exc),
                    code="persistence",
                )
            )
            return state.outcome(LoopStatus.FAILED, error=str(exc), error_code="persistence")
        except Exception as exc:
            logger.exception("Run for session %s failed unexpectedly", session_id)
            return await self._finish_crashed(state, str(exc) or type(exc).__name__)

    async def _iterate(self, state: _RunState) -> LoopOutcome:
        schemas = self._registry.schemas(state.tool_names)

        while True:
            if state.cancel.cancelled:
                return await self._finish_cancelled(state)
            max_iterations = self._config.max_iterations
            if max_iterations is not None and state.iterations >= max_iterations:
                return await self._finish_failed(
                    state, f"Max iterations ({max_iterations}) exceeded", code="max_iterations"
                )

            state.iterations += 1
            messages = await self._store.get_messages(state.session_id)
            history = build_history(messages, self._config.system_prompt)

            try:
                response = await self._call_gateway(state, history, schemas)
            except _RunCancelled:
                return await self._finish_cancelled(state)
            except GatewayError as exc:
                logger.warning("Gateway error in session %s: %s", state.session_id, exc)
                return self._gateway_failed(state, str(exc))
            except Exception as exc:  # noqa: BLE001 - gateways are opaque, any failure ends the run
                logger.exception("Unexpected gateway failure in session %s", state.session_id)
                return self._gateway_failed(state, str(exc) or type(exc).__name__)

            state.usage = state.usage + response.usage
            if response.reasoning:
                await self._append(state, ReasoningPart(text=response.reasoning))

            if not response.tool_requests:
                return await self._finish_completed(state, response.text)

            if response.text:
                await self._append(state, TextPart(text=response.text))

            logger.info(
                "Session %s iteration %d requested tools: %s",
                state.session_id,
                state.iterations,
                ", ".join(request.name for request in response.tool_requests),
            )
            for request in response.tool_requests:
                if state.cancel.cancelled:
                    return await self._finish_cancelled(state)
                await self._handle_tool_request(state, request)

    # ------------------------------------------------------------------ model calls

    async def _call_gateway(
        self,
        state: _RunState,
        history: Sequence[Any],
        schemas: list[dict[str, Any]],
    ) -> GatewayResponse:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._stream_once(state, history, schemas)
            except GatewayError as exc:
                retry = exc.retryable and state.attempt_chunks == 0 and attempt <= self._config.gateway_retries
                if not retry:
                    raise
                delay = self._config.retry_delay_for(attempt)
                logger.warning(
                    "Transient gateway error (attempt %d/%d), retrying in %.2fs: %s",
                    attempt,
                    self._config.gateway_retries,
                    delay,
                    exc,
                )
                await self._sleep_unless_cancelled(delay, state.cancel)

    async def _stream_once(
        self,
        state: _RunState,
        history: Sequence[Any],
        schemas: list[dict[str, Any]],
    ) -> GatewayResponse:
        response = GatewayResponse()
        state.attempt_chunks = 0
        iterator = self._gateway.stream(history, schemas).__aiter__()
        try:
            while True:
                chunk = await self._next_chunk(iterator, state.cancel)
                if chunk is _EXHAUSTED:
                    raise GatewayError("Model stream ended without a completion marker", retryable=True)
                if isinstance(chunk, TextDelta):
                    state.attempt_chunks += 1
                    response.text += chunk.text
                    self._publish(
                        StreamTextEvent(
                            session_id=state.session_id,
                            message_id=state.message_id,
                            content=response.text,
                            delta=chunk.text,
                        )
                    )
                elif isinstance(chunk, ReasoningDelta):
                    state.attempt_chunks += 1
                    response.reasoning += chunk.text
                    self._publish(
                        StreamReasoningEvent(
                            session_id=state.session_id,
                            message_id=state.message_id,
                            content=response.reasoning,
                            delta=chunk.text,
                        )
                    )
                elif isinstance(chunk, ToolRequest):
                    state.attempt_chunks += 1
                    response.tool_requests.append(chunk)
                elif isinstance(chunk, StreamFailure):
                    raise GatewayError(chunk.error, retryable=chunk.retryable)
                elif isinstance(chunk, Completion):
                    response.usage = chunk.usage
                    return response
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _next_chunk(self, iterator: AsyncIterator[Chunk], cancel: CancellationToken) -> Any:
        if cancel.cancelled:
            raise _RunCancelled()
        next_task = asyncio.ensure_future(_anext(iterator))
        cancel_task = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({next_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_task.cancel()
        if next_task in done:
            return next_task.result()
        next_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await next_task
        raise _RunCancelled()

    async def _sleep_unless_cancelled(self, delay: float, cancel: CancellationToken) -> None:
        try:
            await asyncio.wait_for(cancel.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise _RunCancelled()

    # ------------------------------------------------------------------ tools

    async def _handle_tool_request(self, state: _RunState, request: ToolRequest) -> None:
        call_part = ToolCallPart(tool_name=request.name, call_id=request.call_id, args=request.args)
        await self._append(state, call_part)
        self._publish(
            StreamToolCallEvent(
                session_id=state.session_id,
                message_id=state.message_id,
                tool_name=request.name,
                tool_args=request.args,
                tool_call_id=request.call_id,
            )
        )

        context = ToolContext(
            session_id=state.session_id,
            message_id=state.message_id or "",
            call_id=request.call_id,
            working_directory=state.working_directory,
            cancel=state.cancel,
        )
        verdict = state.tracker.check(request.name, request.args)

        if verdict.flagged:
            rejection = DoomLoopRejection(request.name, verdict.streak)
            logger.warning("Session %s: %s", state.session_id, rejection)
            result = await self._registry.reject(request.name, str(rejection), context)
            result.metadata["doom_loop"] = True
        elif request.error:
            result = await self._registry.reject(request.name, request.error, context)
        elif state.tool_names is not None and request.name not in state.tool_names:
            available = ", ".join(state.tool_names) or "none"
            result = await self._registry.reject(
                request.name,
                f"Tool '{request.name}' is not available. Available tools: {available}",
                context,
            )
        elif state.cancel.cancelled:
            result = ToolResult.failure("Cancelled before execution", cancelled=True)
        else:
            # In-flight tools are always awaited; they observe cancellation through the context.
            result = await self._registry.execute(request.name, request.args, context)

        await self._record_result(state, call_part, result)

    async def _record_result(self, state: _RunState, call_part: ToolCallPart, result: ToolResult) -> None:
        result_part = ToolResultPart(
            call_id=call_part.call_id,
            tool_name=call_part.tool_name,
            output=result.output,
            success=result.success,
            error=result.error,
            metadata=result.metadata or None,
        )
        await self._append(state, result_part)
        await self._store.update_part(
            session_id=state.session_id,
            message_id=state.message_id,
            part_id=call_part.id,
            mutation=ToolCallUpdate(
                state=ToolCallState.COMPLETED if result.success else ToolCallState.FAILED,
                error=result.error,
            ),
        )
        self._publish(
            StreamToolResultEvent(
                session_id=state.session_id,
                message_id=state.message_id,
                tool_name=call_part.tool_name,
                tool_call_id=call_part.call_id,
                result=result.output,
                success=result.success,
                error=result.error,
            )
        )

    # ------------------------------------------------------------------ endings

    async def _finish_completed(self, state: _RunState, text: str) -> LoopOutcome:
        await self._append(state, TextPart(text=text))
        await self._store.finish_message(
            session_id=state.session_id,
            message_id=state.message_id,
            finish_reason="stop",
        )
        self._publish(
            StreamCompletedEvent(
                session_id=state.session_id,
                message_id=state.message_id,
                usage=state.usage,
            )
        )
        await self._update_title(state)
        logger.info("Session %s completed after %d iteration(s)", state.session_id, state.iterations)
        return state.outcome(LoopStatus.COMPLETED, text=text)

    async def _finish_cancelled(self, state: _RunState) -> LoopOutcome:
        reason = state.cancel.reason or "Cancelled"
        await self._store.finish_message(
            session_id=state.session_id,
            message_id=state.message_id,
            finish_reason="cancelled",
            error=reason,
        )
        self._publish(
            StreamErrorEvent(
                session_id=state.session_id,
                message_id=state.message_id,
                error=reason,
                code="cancelled",
            )
        )
        logger.info("Session %s cancelled: %s", state.session_id, reason)
        return state.outcome(LoopStatus.CANCELLED, error=reason, error_code="cancelled")

    async def _finish_failed(self, state: _RunState, error: str, *, code: str) -> LoopOutcome:
        await self._store.finish_message(
            session_id=state.session_id,
            message_id=state.message_id,
            finish_reason="error",
            error=error,
        )
        self._publish(
            StreamErrorEvent(session_id=state.session_id, message_id=state.message_id, error=error, code=code)
        )
        return state.outcome(LoopStatus.FAILED, error=error, error_code=code)

    def _gateway_failed(self, state: _RunState, error: str) -> LoopOutcome:
        self._publish(
            StreamErrorEvent(
                session_id=state.session_id,
                message_id=state.message_id,
                error=error,
                code="gateway",
            )
        )
        return state.outcome(LoopStatus.FAILED, error=error, error_code="gateway")

    async def _finish_crashed(self, state: _RunState, error: str) -> LoopOutcome:
        if state.message_id is not None:
            try:
                await self._store.finish_message(
                    session_id=state.session_id,
                    message_id=state.message_id,
                    finish_reason="error",
                    error=error,
                )
            except PersistenceError as exc:
                logger.warning("Could not mark message %s as failed: %s", state.message_id, exc)
        self._publish(
            StreamErrorEvent(session_id=state.session_id, message_id=state.message_id, error=error, code="internal")
        )
        return state.outcome(LoopStatus.FAILED, error=error, error_code="internal")

    async def _update_title(self, state: _RunState) -> None:
        try:
            title = await ensure_session_title(self._store, state.session_id, self._title_gateway)
        except PersistenceError as exc:
            logger.warning("Could not store title for session %s: %s", state.session_id, exc)
            return
        if title:
            self._publish(SessionUpdatedEvent(session_id=state.session_id, updates={"title": title}))

    # ------------------------------------------------------------------ helpers

    async def _append(self, state: _RunState, part: Part) -> Part:
        return await self._store.append_part(
            session_id=state.session_id,
            message_id=state.message_id,
            part=part,
        )

    def _publish(self, event: BaseEvent) -> None:
        self._bus.publish(event)


async def _anext(iterator: AsyncIterator[Chunk]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED
