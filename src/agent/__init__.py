# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""Agent loop, model gateway, tool registry and doom-loop detection."""

from __future__ import annotations

from importlib import import_module
from typing import Any

_EXPORTS = {
    "AgentLoop": ".loop",
    "LoopOutcome": ".loop",
    "LoopStatus": ".loop",
    "CancellationToken": ".cancellation",
    "DoomLoopTracker": ".doom_loop",
    "detect_doom_loop": ".doom_loop",
    "LangChainGateway": ".gateway",
    "ModelGateway": ".gateway",
    "SessionRunManager": ".runs",
    "ToolContext": ".tools",
    "ToolRegistry": ".tools",
    "ToolResult": ".tools",
    "ToolSpec": ".tools",
}

__all__ = list(_EXPORTS)


def __getattr__(name: str) -> Any:
    # Submodules import the event bus and session store, which in turn import
    # ``src.agent.errors``; resolving exports lazily keeps that import acyclic.
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    return getattr(import_module(module_name, __name__), name)
