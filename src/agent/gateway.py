# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""Boundary to the language model.

A gateway turns a conversation history plus tool schemas into a lazy, finite,
non-restartable stream of chunks ending with a ``Completion`` marker. A
``StreamFailure`` chunk (or a raised ``GatewayError``) ends the stream with an
error instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional, Protocol, Sequence, Union, runtime_checkable
from uuid import uuid4

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, AIMessageChunk, BaseMessage

from src.events.types import TokenUsage

from .errors import GatewayError

logger = logging.getLogger(__name__)


def new_call_id() -> str:
    return f"call_{uuid4().hex[:24]}"


@dataclass(slots=True)
class TextDelta:
    text: str


@dataclass(slots=True)
class ReasoningDelta:
    text: str


@dataclass(slots=True)
class ToolRequest:
    name: str
    args: dict[str, Any]
    call_id: str = field(default_factory=new_call_id)
    # Set when the model produced arguments that could not be parsed.
    error: Optional[str] = None


@dataclass(slots=True)
class Completion:
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass(slots=True)
class StreamFailure:
    error: str
    retryable: bool = False


Chunk = Union[TextDelta, ReasoningDelta, ToolRequest, Completion, StreamFailure]


@dataclass(slots=True)
class GatewayResponse:
    text: str = ""
    reasoning: str = ""
    tool_requests: list[ToolRequest] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)


@runtime_checkable
class ModelGateway(Protocol):
    model_name: str

    def stream(self, history: Sequence[BaseMessage], tools: Sequence[dict[str, Any]]) -> AsyncIterator[Chunk]:
        ...

    async def complete(self, history: Sequence[BaseMessage], tools: Sequence[dict[str, Any]]) -> GatewayResponse:
        ...


async def collect(chunks: AsyncIterator[Chunk]) -> GatewayResponse:
    """Drain a chunk stream into a single response."""
    response = GatewayResponse()
    async for chunk in chunks:
        if isinstance(chunk, TextDelta):
            response.text += chunk.text
        elif isinstance(chunk, ReasoningDelta):
            response.reasoning += chunk.text
        elif isinstance(chunk, ToolRequest):
            response.tool_requests.append(chunk)
        elif isinstance(chunk, StreamFailure):
            raise GatewayError(chunk.error, retryable=chunk.retryable)
        elif isinstance(chunk, Completion):
            response.usage = chunk.usage
            return response
    raise GatewayError("Model stream ended without a completion marker", retryable=True)


class BaseGateway:
    model_name: str = "unknown"

    def stream(self, history: Sequence[BaseMessage], tools: Sequence[dict[str, Any]]) -> AsyncIterator[Chunk]:
        raise NotImplementedError

    async def complete(self, history: Sequence[BaseMessage], tools: Sequence[dict[str, Any]]) -> GatewayResponse:
        return await collect(self.stream(history, tools))


class LangChainGateway(BaseGateway):
    """Adapts a ``langchain_core`` chat model to the gateway contract."""

    def __init__(self, model: BaseChatModel, *, model_name: Optional[str] = None) -> None:
        self._model = model
        self.model_name = model_name or _model_name_of(model)

    async def stream(
        self,
        history: Sequence[BaseMessage],
        tools: Sequence[dict[str, Any]],
    ) -> AsyncIterator[Chunk]:
        runnable = self._model.bind_tools(list(tools)) if tools else self._model
        aggregate: Optional[BaseMessage] = None
        try:
            async for message in runnable.astream(list(history)):
                text = _text_of(message.content)
                if text:
                    yield TextDelta(text)
                reasoning = message.additional_kwargs.get("reasoning_content")
                if reasoning:
                    yield ReasoningDelta(str(reasoning))
                if isinstance(message, AIMessageChunk) and isinstance(aggregate, AIMessageChunk):
                    aggregate = aggregate + message
                else:
                    aggregate = message
        except GatewayError:
            raise
        except Exception as exc:  # noqa: BLE001 - provider errors are normalised at this boundary
            logger.warning("Model call to %s failed: %s", self.model_name, exc)
            raise GatewayError(f"Model call failed: {exc}", retryable=_is_retryable(exc)) from exc

        if aggregate is None:
            raise GatewayError("Model returned an empty stream", retryable=True)

        for request in _tool_requests_of(aggregate):
            yield request
        yield Completion(usage=_usage_of(aggregate))


def _text_of(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        pieces = []
        for item in content:
            if isinstance(item, str):
                pieces.append(item)
            elif isinstance(item, dict) and item.get("type") == "text":
                pieces.append(str(item.get("text", "")))
        return "".join(pieces)
    return ""


def _tool_requests_of(message: BaseMessage) -> list[ToolRequest]:
    if not isinstance(message, AIMessage):
        return []
    requests = [
        ToolRequest(name=call["name"], args=dict(call.get("args") or {}), call_id=call.get("id") or new_call_id())
        for call in message.tool_calls
    ]
    for invalid in message.invalid_tool_calls:
        requests.append(
            ToolRequest(
                name=invalid.get("name") or "unknown",
                args={},
                call_id=invalid.get("id") or new_call_id(),
                error=invalid.get("error") or f"Could not parse arguments: {invalid.get('args')}",
            )
        )
    return requests


def _usage_of(message: BaseMessage) -> TokenUsage:
    usage = getattr(message, "usage_metadata", None)
    if not usage:
        return TokenUsage()
    return TokenUsage(
        prompt_tokens=usage.get("input_tokens", 0),
        completion_tokens=usage.get("output_tokens", 0),
        total_tokens=usage.get("total_tokens", 0),
    )


def _model_name_of(model: BaseChatModel) -> str:
    for attribute in ("model_name", "model"):
        value = getattr(model, attribute, None)
        if isinstance(value, str) and value:
            return value
    return model._llm_type


def _is_retryable(exc: Exception) -> bool:
    message = str(exc).lower()
    fatal_markers = ("401", "unauthorized", "invalid authentication", "api key", "permission denied")
    if any(marker in message for marker in fatal_markers):
        return False
    return isinstance(exc, (TimeoutError, ConnectionError)) or "rate limit" in message or "429" in message
