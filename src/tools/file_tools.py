# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

import asyncio
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from src.agent.errors import ToolExecutionError
from src.agent.tools import ToolContext, ToolResult, ToolSpec

logger = logging.getLogger(__name__)

MAX_GLOB_RESULTS = 100
DEFAULT_READ_LIMIT = 2000
MAX_LINE_LENGTH = 2000


class GlobArgs(BaseModel):
    pattern: str = Field(description='Glob pattern to match files against, e.g. "**/*.py"')
    path: Optional[str] = Field(
        default=None,
        description="Directory to search in, relative to the working directory. Defaults to the working directory.",
    )


class ReadFileArgs(BaseModel):
    path: str = Field(description="Path of the file to read, relative to the working directory")
    offset: int = Field(default=0, ge=0, description="Line number to start reading from (0-based)")
    limit: int = Field(default=DEFAULT_READ_LIMIT, gt=0, description="Maximum number of lines to read")


def _resolve(working_directory: str, relative: Optional[str]) -> Path:
    root = Path(working_directory).resolve()
    target = (root / relative).resolve() if relative else root
    if target != root and root not in target.parents:
        raise ToolExecutionError(f"Path '{relative}' is outside the working directory")
    return target


def _glob(root: Path, base: Path, pattern: str) -> tuple[list[str], bool]:
    matches = [path for path in base.glob(pattern) if path.is_file()]
    # Most recently modified first.
    matches.sort(key=lambda path: path.stat().st_mtime, reverse=True)
    truncated = len(matches) > MAX_GLOB_RESULTS
    return [path.relative_to(root).as_posix() for path in matches[:MAX_GLOB_RESULTS]], truncated


async def glob_files(args: GlobArgs, ctx: ToolContext) -> ToolResult:
    root = Path(ctx.working_directory).resolve()
    base = _resolve(ctx.working_directory, args.path)
    if not base.is_dir():
        raise ToolExecutionError(f"Directory not found: {args.path}")

    files, truncated = await asyncio.to_thread(_glob, root, base, args.pattern)
    logger.debug("glob %r under %s matched %d file(s)", args.pattern, base, len(files))

    if not files:
        output = "No files found"
    else:
        output = "\n".join(files)
        if truncated:
            output += f"\n\n(Results are truncated to the first {MAX_GLOB_RESULTS} files.)"
    return ToolResult(
        success=True,
        output=output,
        metadata={"count": len(files), "truncated": truncated},
    )


def _read_lines(path: Path, offset: int, limit: int) -> tuple[list[str], int]:
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        lines = handle.read().splitlines()
    return lines[offset : offset + limit], len(lines)


async def read_file(args: ReadFileArgs, ctx: ToolContext) -> ToolResult:
    path = _resolve(ctx.working_directory, args.path)
    if not path.exists():
        raise ToolExecutionError(f"File not found: {args.path}")
    if path.is_dir():
        raise ToolExecutionError(f"Path is a directory, not a file: {args.path}")

    lines, total = await asyncio.to_thread(_read_lines, path, args.offset, args.limit)
    numbered = []
    for index, line in enumerate(lines, start=args.offset + 1):
        if len(line) > MAX_LINE_LENGTH:
            line = line[:MAX_LINE_LENGTH] + "..."
        numbered.append(f"{index:05d}| {line}")

    output = "\n".join(numbered)
    last_line = args.offset + len(lines)
    if last_line < total:
        output += f"\n\n(File has more lines. Use 'offset' to read beyond line {last_line}.)"
    return ToolResult(
        success=True,
        output=output,
        metadata={"lines": len(lines), "total_lines": total},
    )


GLOB_TOOL = ToolSpec(
    name="glob",
    description=(
        "Find files by name pattern. Returns matching file paths relative to the working directory, "
        "most recently modified first."
    ),
    args_schema=GlobArgs,
    execute=glob_files,
)

READ_FILE_TOOL = ToolSpec(
    name="read_file",
    description="Read a text file from the working directory. Lines are returned numbered from 1.",
    args_schema=ReadFileArgs,
    execute=read_file,
)
