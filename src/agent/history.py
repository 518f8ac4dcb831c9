# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""Rebuild the model-facing conversation from persisted session parts."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage

from src.server.session.models import (
    MessageRecord,
    MessageRole,
    Part,
    ReasoningPart,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)

INTERRUPTED_TOOL_OUTPUT = "Error: the tool call was interrupted before it produced a result."


@dataclass
class _AssistantTurn:
    text: list[str] = field(default_factory=list)
    reasoning: list[str] = field(default_factory=list)
    tool_calls: list[ToolCallPart] = field(default_factory=list)

    def empty(self) -> bool:
        return not (self.text or self.reasoning or self.tool_calls)

    def to_message(self) -> AIMessage:
        additional_kwargs: dict[str, Any] = {}
        if self.reasoning:
            additional_kwargs["reasoning_content"] = "".join(self.reasoning)
        return AIMessage(
            content="".join(self.text),
            additional_kwargs=additional_kwargs,
            tool_calls=[
                {"name": call.tool_name, "args": call.args, "id": call.call_id, "type": "tool_call"}
                for call in self.tool_calls
            ],
        )


def build_history(messages: Iterable[MessageRecord], system_prompt: Optional[str] = None) -> list[BaseMessage]:
    history: list[BaseMessage] = []
    if system_prompt:
        history.append(SystemMessage(content=system_prompt))

    for message in messages:
        if message.role is MessageRole.USER:
            history.append(HumanMessage(content=message.text() or "(empty)", id=message.id))
        elif message.role is MessageRole.SYSTEM:
            text = message.text().strip()
            if text:
                history.append(SystemMessage(content=text, id=message.id))
        else:
            history.extend(_convert_parts(message.parts))
    return history


def _convert_parts(parts: Iterable[Part]) -> list[BaseMessage]:
    converted: list[BaseMessage] = []
    turn = _AssistantTurn()
    open_calls: dict[str, ToolCallPart] = {}

    def flush() -> None:
        nonlocal turn
        if turn.empty():
            return
        _close_open_calls(converted, open_calls)
        converted.append(turn.to_message())
        for call in turn.tool_calls:
            open_calls[call.call_id] = call
        turn = _AssistantTurn()

    for part in parts:
        if isinstance(part, (TextPart, ReasoningPart)):
            if turn.tool_calls:
                flush()
            if isinstance(part, TextPart):
                turn.text.append(part.text)
            else:
                turn.reasoning.append(part.text)
        elif isinstance(part, ToolCallPart):
            turn.tool_calls.append(part)
        elif isinstance(part, ToolResultPart):
            flush()
            open_calls.pop(part.call_id, None)
            converted.append(
                ToolMessage(
                    content=render_tool_output(part),
                    tool_call_id=part.call_id,
                    name=part.tool_name,
                    status="success" if part.success else "error",
                )
            )

    flush()
    _close_open_calls(converted, open_calls)
    return converted


def _close_open_calls(converted: list[BaseMessage], open_calls: dict[str, ToolCallPart]) -> None:
    # Every advertised tool call needs an answer before the conversation continues.
    for call in open_calls.values():
        converted.append(
            ToolMessage(
                content=INTERRUPTED_TOOL_OUTPUT,
                tool_call_id=call.call_id,
                name=call.tool_name,
                status="error",
            )
        )
    open_calls.clear()


def render_tool_output(part: ToolResultPart) -> str:
    if not part.success:
        return f"Error: {part.error or 'Unknown tool error'}"
    if isinstance(part.output, str):
        return part.output or "(no output)"
    return json.dumps(part.output, ensure_ascii=False, default=str)
