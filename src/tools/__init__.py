# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from src.agent.tools import ToolSpec

from .file_tools import GLOB_TOOL, READ_FILE_TOOL


def default_tools() -> list[ToolSpec]:
    return [GLOB_TOOL, READ_FILE_TOOL]


__all__ = [
    "GLOB_TOOL",
    "READ_FILE_TOOL",
    "default_tools",
]
