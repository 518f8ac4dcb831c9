import asyncio
import gc
import sqlite3
from contextlib import closing

import pytest

from src.agent.errors import (
    InvalidPartMutation,
    MessageNotFoundError,
    PartNotFoundError,
    PartReferenceError,
    SessionNotFoundError,
)
from src.server.session.models import (
    MessageRole,
    PartType,
    ReasoningPart,
    TextPart,
    ToolCallPart,
    ToolCallState,
    ToolCallUpdate,
    ToolResultPart,
)
from src.server.session.store import SQLiteSessionStore


async def _open_store(tmp_path) -> SQLiteSessionStore:
    store = SQLiteSessionStore(str(tmp_path / "session_store.db"))
    await store.init()
    return store


@pytest.mark.asyncio
async def test_create_session_and_messages(tmp_path):
    store = await _open_store(tmp_path)

    session = await store.create_session()
    assert session.id
    assert session.title is None
    assert session.message_count == 0

    stored = await store.get_session(session.id)
    assert stored is not None
    assert stored.last_message_preview is None

    await store.append_message(session_id=session.id, role="user", parts=[TextPart(text="hello")])
    await store.append_message(
        session_id=session.id,
        role=MessageRole.ASSISTANT,
        parts=[ReasoningPart(text="greet back"), TextPart(text="Hi, how can I help?")],
        finish_reason="stop",
    )

    messages = await store.get_messages(session.id)
    assert [message.seq for message in messages] == [1, 2]
    assert messages[0].text() == "hello"
    assert [part.type for part in messages[1].parts] == [PartType.REASONING, PartType.TEXT]
    assert messages[1].finish_reason == "stop"

    sessions = await store.list_sessions()
    assert len(sessions) == 1
    assert sessions[0].message_count == 2
    assert sessions[0].last_message_preview == "Hi, how can I help?"
    await store.close()


@pytest.mark.asyncio
async def test_parts_come_back_in_append_order(tmp_path):
    store = await _open_store(tmp_path)
    session = await store.create_session()
    message = await store.append_message(session_id=session.id, role="assistant")

    appended = []
    for index in range(3):
        call = ToolCallPart(tool_name="glob", call_id=f"call_{index}", args={"pattern": f"*.{index}"})
        appended.append(await store.append_part(session_id=session.id, message_id=message.id, part=call))
        result = ToolResultPart(call_id=call.call_id, tool_name="glob", output=[f"file.{index}"], success=True)
        appended.append(await store.append_part(session_id=session.id, message_id=message.id, part=result))
    appended.append(await store.append_part(session_id=session.id, message_id=message.id, part=TextPart(text="done")))

    parts = (await store.get_messages(session.id))[0].parts
    assert [part.id for part in parts] == [part.id for part in appended]
    assert [part.seq for part in parts] == list(range(1, 8))
    assert parts[1].output == ["file.0"]
    assert parts[0].args == {"pattern": "*.0"}
    await store.close()


@pytest.mark.asyncio
async def test_tool_result_must_reference_existing_call(tmp_path):
    store = await _open_store(tmp_path)
    session = await store.create_session()
    message = await store.append_message(session_id=session.id, role="assistant")

    orphan = ToolResultPart(call_id="call_missing", tool_name="glob", output="", success=False, error="x")
    with pytest.raises(PartReferenceError):
        await store.append_part(session_id=session.id, message_id=message.id, part=orphan)

    assert (await store.get_messages(session.id))[0].parts == []
    await store.close()


@pytest.mark.asyncio
async def test_tool_call_state_moves_only_from_pending_to_terminal(tmp_path):
    store = await _open_store(tmp_path)
    session = await store.create_session()
    message = await store.append_message(session_id=session.id, role="assistant")
    call = await store.append_part(
        session_id=session.id,
        message_id=message.id,
        part=ToolCallPart(tool_name="read_file", call_id="call_1", args={"path": "a.ts"}),
    )
    text = await store.append_part(session_id=session.id, message_id=message.id, part=TextPart(text="hi"))

    updated = await store.update_part(
        session_id=session.id,
        message_id=message.id,
        part_id=call.id,
        mutation=ToolCallUpdate(state=ToolCallState.FAILED, error="boom"),
    )
    assert isinstance(updated, ToolCallPart)
    assert (updated.id, updated.tool_name, updated.args) == (call.id, "read_file", {"path": "a.ts"})
    assert updated.state is ToolCallState.FAILED
    assert updated.error == "boom"

    with pytest.raises(InvalidPartMutation):
        await store.update_part(
            session_id=session.id,
            message_id=message.id,
            part_id=call.id,
            mutation=ToolCallUpdate(state=ToolCallState.COMPLETED),
        )
    with pytest.raises(InvalidPartMutation):
        await store.update_part(
            session_id=session.id,
            message_id=message.id,
            part_id=text.id,
            mutation=ToolCallUpdate(state=ToolCallState.COMPLETED),
        )
    with pytest.raises(PartNotFoundError):
        await store.update_part(
            session_id=session.id,
            message_id=message.id,
            part_id="nope",
            mutation=ToolCallUpdate(state=ToolCallState.COMPLETED),
        )

    stored = (await store.get_messages(session.id))[0].parts[0]
    assert stored.state is ToolCallState.FAILED
    await store.close()


@pytest.mark.asyncio
async def test_missing_session_and_message_are_reported(tmp_path):
    store = await _open_store(tmp_path)

    with pytest.raises(SessionNotFoundError):
        await store.get_messages("missing")
    with pytest.raises(SessionNotFoundError):
        await store.append_message(session_id="missing", role="user", parts=[TextPart(text="hi")])

    session = await store.create_session()
    with pytest.raises(MessageNotFoundError):
        await store.append_part(session_id=session.id, message_id="missing", part=TextPart(text="hi"))
    with pytest.raises(MessageNotFoundError):
        await store.finish_message(session_id=session.id, message_id="missing", finish_reason="stop")
    await store.close()


@pytest.mark.asyncio
async def test_rename_and_delete_session(tmp_path):
    store = await _open_store(tmp_path)

    session = await store.create_session()
    await store.append_message(session_id=session.id, role="user", parts=[TextPart(text="test")])

    renamed = await store.rename_session(session.id, "Renamed session")
    assert renamed.title == "Renamed session"
    assert await store.session_has_title(session.id)

    await store.delete_session(session.id)
    assert await store.get_session(session.id) is None
    with pytest.raises(SessionNotFoundError):
        await store.update_session_title(session.id, "gone")
    await store.close()


@pytest.mark.asyncio
async def test_concurrent_appends_keep_sequences_dense(tmp_path):
    store = await _open_store(tmp_path)
    first = await store.create_session()
    second = await store.create_session()

    async def write(session_id: str, count: int) -> None:
        for index in range(count):
            await store.append_message(session_id=session_id, role="user", parts=[TextPart(text=str(index))])

    await asyncio.gather(write(first.id, 10), write(second.id, 10), write(first.id, 5))

    first_messages = await store.get_messages(first.id)
    second_messages = await store.get_messages(second.id)
    assert [message.seq for message in first_messages] == list(range(1, 16))
    assert [message.seq for message in second_messages] == list(range(1, 11))
    created = [message.created_at for message in first_messages]
    assert created == sorted(created)
    await store.close()


@pytest.mark.asyncio
async def test_held_session_lock_does_not_block_other_sessions(tmp_path):
    store = await _open_store(tmp_path)
    busy = await store.create_session()
    free = await store.create_session()

    async with store._lock_for(busy.id):
        waiting = asyncio.create_task(
            store.append_message(session_id=busy.id, role="user", parts=[TextPart(text="queued")])
        )
        await asyncio.wait_for(
            store.append_message(session_id=free.id, role="user", parts=[TextPart(text="through")]),
            timeout=5,
        )
        assert not waiting.done()

    await asyncio.wait_for(waiting, timeout=5)
    assert [message.text() for message in await store.get_messages(free.id)] == ["through"]
    assert [message.text() for message in await store.get_messages(busy.id)] == ["queued"]
    await store.close()


@pytest.mark.asyncio
async def test_idle_session_locks_are_released(tmp_path):
    store = await _open_store(tmp_path)
    sessions = [await store.create_session() for _ in range(5)]

    for session in sessions:
        await store.append_message(session_id=session.id, role="user", parts=[TextPart(text="hi")])
        await store.update_session_title(session.id, "titled")
    gc.collect()

    assert len(store._session_locks) == 0
    await store.close()


@pytest.mark.asyncio
async def test_child_sessions_and_legacy_schema(tmp_path):
    db_path = tmp_path / "legacy.db"
    with closing(sqlite3.connect(db_path)) as connection:
        connection.execute(
            "CREATE TABLE sessions (id TEXT PRIMARY KEY, title TEXT, last_message_preview TEXT,"
            " message_count INTEGER NOT NULL DEFAULT 0, created_at TEXT NOT NULL, updated_at TEXT NOT NULL)"
        )
        connection.execute(
            "INSERT INTO sessions VALUES ('old', 'Old session', NULL, 0,"
            " '2025-01-01T00:00:00.000000Z', '2025-01-01T00:00:00.000000Z')"
        )
        connection.commit()

    store = SQLiteSessionStore(str(db_path))
    await store.init()

    old = await store.get_session("old")
    assert old.title == "Old session"
    assert old.parent_id is None

    child = await store.create_session(title="Compacted: Old session", parent_id="old")
    assert child.parent_id == "old"
    assert (await store.get_session(child.id)).parent_id == "old"
    assert [record.id for record in await store.list_child_sessions("old")] == [child.id]
    assert await store.list_child_sessions(child.id) == []
    await store.close()
