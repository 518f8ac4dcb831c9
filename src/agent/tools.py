# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""Pluggable tool registry.

Tools declare their arguments as a pydantic model. The registry validates
arguments, runs the tool and always answers with a ``ToolResult``: failures
are reported as ``success=False`` rather than raised, so the loop can hand
them back to the model.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence

from pydantic import BaseModel, Field, ValidationError

from .cancellation import CancellationToken
from .errors import ToolExecutionError

logger = logging.getLogger(__name__)

INVALID_TOOL_NAME = "invalid"


@dataclass(slots=True)
class ToolContext:
    session_id: str
    message_id: str
    call_id: str = ""
    working_directory: str = "."
    cancel: Optional[CancellationToken] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ToolResult:
    success: bool
    output: Any = ""
    error: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(cls, error: str, **metadata: Any) -> "ToolResult":
        return cls(success=False, output="", error=error, metadata=dict(metadata))


ToolFunction = Callable[[Any, ToolContext], Awaitable[Any]]


@dataclass(slots=True)
class ToolSpec:
    name: str
    description: str
    args_schema: type[BaseModel]
    execute: ToolFunction
    hidden: bool = False

    def schema(self) -> dict[str, Any]:
        parameters = self.args_schema.model_json_schema()
        parameters.pop("title", None)
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters,
            },
        }


class InvalidToolArgs(BaseModel):
    tool: str = Field(description="The name of the tool that was called with invalid arguments")
    error: str = Field(description="Why the call was rejected")


async def _report_invalid(args: InvalidToolArgs, ctx: ToolContext) -> ToolResult:
    return ToolResult(
        success=False,
        output="",
        error=f"The call to tool '{args.tool}' was rejected: {args.error}",
        metadata={"original_tool": args.tool, "error_message": args.error},
    )


INVALID_TOOL = ToolSpec(
    name=INVALID_TOOL_NAME,
    description=(
        "Internal tool for reporting rejected tool calls. Do not call this tool directly - "
        "it is invoked automatically when a call is malformed or refused."
    ),
    args_schema=InvalidToolArgs,
    execute=_report_invalid,
    hidden=True,
)


class ToolRegistry:
    def __init__(self, tools: Iterable[ToolSpec] = ()) -> None:
        self._tools: dict[str, ToolSpec] = {INVALID_TOOL_NAME: INVALID_TOOL}
        for tool in tools:
            self.register(tool)

    def register(self, tool: ToolSpec) -> None:
        if tool.name == INVALID_TOOL_NAME and tool is not INVALID_TOOL:
            raise ValueError(f"Tool name '{INVALID_TOOL_NAME}' is reserved")
        if tool.name in self._tools:
            logger.warning("Replacing already registered tool %s", tool.name)
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return [name for name, tool in self._tools.items() if not tool.hidden]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def schemas(self, names: Optional[Sequence[str]] = None) -> list[dict[str, Any]]:
        selected = self.names() if names is None else [n for n in names if n in self._tools]
        return [self._tools[name].schema() for name in selected if not self._tools[name].hidden]

    async def execute(self, name: str, args: Any, context: ToolContext) -> ToolResult:
        tool = self._tools.get(name)
        if tool is None:
            available = ", ".join(self.names()) or "none"
            return await self.reject(name, f"Tool '{name}' is not available. Available tools: {available}", context)

        try:
            parsed = tool.args_schema.model_validate(args if args is not None else {})
        except ValidationError as exc:
            logger.info("Invalid arguments for tool %s: %s", name, exc)
            return await self.reject(name, _format_validation_error(exc), context)

        started = time.perf_counter()
        try:
            raw = await tool.execute(parsed, context)
        except ToolExecutionError as exc:
            logger.warning("Tool %s failed: %s", name, exc)
            result = ToolResult.failure(str(exc), **exc.metadata)
        except Exception as exc:  # noqa: BLE001 - tool failures are reported to the model
            logger.exception("Tool %s raised an unexpected error", name)
            result = ToolResult.failure(f"{type(exc).__name__}: {exc}")
        else:
            result = raw if isinstance(raw, ToolResult) else ToolResult(success=True, output=raw)

        result.metadata.setdefault("execution_time_ms", round((time.perf_counter() - started) * 1000, 3))
        return result

    async def reject(self, tool_name: str, error: str, context: ToolContext) -> ToolResult:
        """Route a refused call through the ``invalid`` tool."""
        return await INVALID_TOOL.execute(InvalidToolArgs(tool=tool_name, error=error), context)


def _format_validation_error(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "arguments"
        problems.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "Invalid arguments - " + "; ".join(problems)
