import pytest
from pydantic import BaseModel

from src.agent.errors import ToolExecutionError
from src.agent.tools import INVALID_TOOL_NAME, ToolContext, ToolRegistry, ToolResult, ToolSpec
from src.tools import default_tools


class EchoArgs(BaseModel):
    text: str


async def echo(args: EchoArgs, ctx: ToolContext) -> str:
    return args.text.upper()


async def explode(args: EchoArgs, ctx: ToolContext) -> str:
    raise RuntimeError("kaboom")


async def refuse(args: EchoArgs, ctx: ToolContext) -> str:
    raise ToolExecutionError("not allowed", metadata={"reason": "policy"})


@pytest.fixture
def ctx(tmp_path):
    return ToolContext(session_id="s1", message_id="m1", call_id="c1", working_directory=str(tmp_path))


@pytest.fixture
def registry():
    return ToolRegistry(
        [
            ToolSpec("echo", "Echo text back", EchoArgs, echo),
            ToolSpec("explode", "Always fails", EchoArgs, explode),
            ToolSpec("refuse", "Refuses", EchoArgs, refuse),
        ]
    )


def test_invalid_tool_is_registered_but_hidden(registry):
    assert INVALID_TOOL_NAME in registry
    assert INVALID_TOOL_NAME not in registry.names()
    assert [schema["function"]["name"] for schema in registry.schemas()] == ["echo", "explode", "refuse"]


def test_schema_uses_function_format(registry):
    schema = registry.get("echo").schema()
    assert schema["type"] == "function"
    assert schema["function"]["parameters"]["required"] == ["text"]
    assert "title" not in schema["function"]["parameters"]


def test_invalid_name_is_reserved():
    with pytest.raises(ValueError):
        ToolRegistry([ToolSpec(INVALID_TOOL_NAME, "nope", EchoArgs, echo)])


@pytest.mark.asyncio
async def test_execute_returns_success(registry, ctx):
    result = await registry.execute("echo", {"text": "hi"}, ctx)
    assert result.success is True
    assert result.output == "HI"
    assert "execution_time_ms" in result.metadata


@pytest.mark.asyncio
async def test_failures_become_results(registry, ctx):
    crashed = await registry.execute("explode", {"text": "x"}, ctx)
    assert crashed.success is False
    assert "kaboom" in crashed.error

    refused = await registry.execute("refuse", {"text": "x"}, ctx)
    assert refused.success is False
    assert refused.error == "not allowed"
    assert refused.metadata["reason"] == "policy"


@pytest.mark.asyncio
async def test_unknown_tool_and_bad_arguments_route_through_invalid(registry, ctx):
    unknown = await registry.execute("missing", {}, ctx)
    assert unknown.success is False
    assert unknown.metadata["original_tool"] == "missing"
    assert "Available tools: echo, explode, refuse" in unknown.error

    bad = await registry.execute("echo", {"text": 5}, ctx)
    assert bad.success is False
    assert "Invalid arguments" in bad.error


@pytest.mark.asyncio
async def test_reject_produces_failed_result(registry, ctx):
    result = await registry.reject("echo", "Doom loop detected", ctx)
    assert isinstance(result, ToolResult)
    assert result.success is False
    assert result.error == "The call to tool 'echo' was rejected: Doom loop detected"


@pytest.mark.asyncio
async def test_glob_lists_matching_files(tmp_path, ctx):
    (tmp_path / "pkg").mkdir()
    (tmp_path / "pkg" / "mod.py").write_text("x = 1\n")
    (tmp_path / "setup.py").write_text("")
    (tmp_path / "README.md").write_text("")
    registry = ToolRegistry(default_tools())

    result = await registry.execute("glob", {"pattern": "**/*.py"}, ctx)
    assert result.success is True
    assert sorted(result.output.splitlines()) == ["pkg/mod.py", "setup.py"]
    assert result.metadata["count"] == 2

    empty = await registry.execute("glob", {"pattern": "*.rs"}, ctx)
    assert empty.output == "No files found"


@pytest.mark.asyncio
async def test_read_file_numbers_lines_and_pages(tmp_path, ctx):
    (tmp_path / "notes.txt").write_text("one\ntwo\nthree\nfour\n")
    registry = ToolRegistry(default_tools())

    result = await registry.execute("read_file", {"path": "notes.txt", "offset": 1, "limit": 2}, ctx)
    assert result.success is True
    assert result.output.splitlines()[:2] == ["00002| two", "00003| three"]
    assert "offset" in result.output
    assert result.metadata["total_lines"] == 4


@pytest.mark.asyncio
async def test_file_tools_stay_inside_working_directory(tmp_path, ctx):
    registry = ToolRegistry(default_tools())

    escaped = await registry.execute("read_file", {"path": "../outside.txt"}, ctx)
    assert escaped.success is False
    assert "outside the working directory" in escaped.error

    missing = await registry.execute("read_file", {"path": "nope.txt"}, ctx)
    assert missing.success is False
    assert "File not found" in missing.error
