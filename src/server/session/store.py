from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import weakref
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional, TypeVar
from uuid import uuid4

from src.agent.errors import (
    InvalidPartMutation,
    MessageNotFoundError,
    PartNotFoundError,
    PartReferenceError,
    PersistenceError,
    SessionNotFoundError,
)

from .models import (
    MessageRecord,
    MessageRole,
    Part,
    PartType,
    ReasoningPart,
    SessionRecord,
    TextPart,
    ToolCallPart,
    ToolCallState,
    ToolCallUpdate,
    ToolResultPart,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SESSIONS_DDL = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    title TEXT,
    parent_id TEXT,
    last_message_preview TEXT,
    message_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

_MESSAGES_DDL = """
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    role TEXT NOT NULL,
    seq INTEGER NOT NULL,
    finish_reason TEXT,
    error TEXT,
    created_at TEXT NOT NULL,
    UNIQUE(session_id, seq),
    FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE
);
"""

_PARTS_DDL = """
CREATE TABLE IF NOT EXISTS parts (
    id TEXT NOT NULL,
    message_id TEXT NOT NULL,
    session_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    type TEXT NOT NULL,
    content TEXT,
    tool_name TEXT,
    call_id TEXT,
    state TEXT,
    success INTEGER,
    error TEXT,
    payload TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY(message_id, id),
    UNIQUE(message_id, seq),
    FOREIGN KEY(message_id) REFERENCES messages(id) ON DELETE CASCADE
);
"""

_CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_sessions_updated ON sessions(updated_at DESC);",
    "CREATE INDEX IF NOT EXISTS idx_sessions_parent ON sessions(parent_id);",
    "CREATE INDEX IF NOT EXISTS idx_messages_session_seq ON messages(session_id, seq);",
    "CREATE INDEX IF NOT EXISTS idx_parts_message_seq ON parts(message_id, seq);",
    "CREATE INDEX IF NOT EXISTS idx_parts_session_call ON parts(session_id, call_id);",
]

_SESSION_COLUMNS = "id, title, parent_id, last_message_preview, message_count, created_at, updated_at"
_PREVIEW_LENGTH = 200


def _ensure_pragmas(connection: sqlite3.Connection) -> None:
    connection.execute("PRAGMA foreign_keys = ON;")
    connection.execute("PRAGMA journal_mode = WAL;")


class SQLiteSessionStore:
    """SQLite-backed repository for sessions, messages and their parts.

    Every write is committed before the coroutine returns. Writes touching the
    same session are serialized through a per-session lock so ``seq`` order is
    the order callers observe; different sessions never wait on each other.
    """

    def __init__(self, db_path: str) -> None:
        path = Path(db_path)
        if not path.is_absolute():
            path = Path.cwd() / path
        if path.suffix != ".db":
            path = path.with_suffix(".db")
        self._db_path = str(path)
        # Entries disappear once no coroutine holds or waits on the lock.
        self._session_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @property
    def db_path(self) -> str:
        return self._db_path

    async def init(self) -> None:
        """Initialise database schema."""
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        def _init() -> None:
            with self._connection() as connection:
                connection.execute(_SESSIONS_DDL)
                _migrate_sessions(connection)
                connection.execute(_MESSAGES_DDL)
                connection.execute(_PARTS_DDL)
                for statement in _CREATE_INDEXES:
                    connection.execute(statement)

        await self._call(_init)
        logger.info("Session database initialised at %s", self._db_path)

    async def close(self) -> None:
        self._session_locks.clear()

    # ------------------------------------------------------------------ sessions

    async def create_session(
        self,
        *,
        title: Optional[str] = None,
        parent_id: Optional[str] = None,
    ) -> SessionRecord:
        session_id = uuid4().hex
        now = _utc_now_str()

        await self._call(
            self._execute,
            f"INSERT INTO sessions ({_SESSION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (session_id, title, parent_id, None, 0, now, now),
        )
        logger.debug("Created session %s", session_id)
        return SessionRecord(
            id=session_id,
            title=title,
            created_at=_parse_ts(now),
            updated_at=_parse_ts(now),
            message_count=0,
            last_message_preview=None,
            parent_id=parent_id,
        )

    async def list_sessions(self) -> list[SessionRecord]:
        rows = await self._call(
            self._fetchall,
            f"SELECT {_SESSION_COLUMNS} FROM sessions ORDER BY updated_at DESC, created_at DESC",
        )
        return [self._row_to_session(row) for row in rows]

    async def list_child_sessions(self, parent_id: str) -> list[SessionRecord]:
        rows = await self._call(
            self._fetchall,
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE parent_id = ? ORDER BY created_at ASC",
            (parent_id,),
        )
        return [self._row_to_session(row) for row in rows]

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        row = await self._call(
            self._fetchone,
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?",
            (session_id,),
        )
        return self._row_to_session(row) if row else None

    async def update_session_title(self, session_id: str, title: str) -> None:
        now = _utc_now_str()
        async with self._lock_for(session_id):
            count = await self._call(
                self._execute,
                "UPDATE sessions SET title = ?, updated_at = ? WHERE id = ?",
                (title, now, session_id),
            )
        if count == 0:
            raise SessionNotFoundError(session_id)

    async def rename_session(self, session_id: str, title: str) -> SessionRecord:
        await self.update_session_title(session_id, title)
        session = await self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def session_has_title(self, session_id: str) -> bool:
        row = await self._call(
            self._fetchone,
            "SELECT title FROM sessions WHERE id = ?",
            (session_id,),
        )
        return bool(row and row["title"])

    async def delete_session(self, session_id: str) -> None:
        async with self._lock_for(session_id):
            await self._call(self._execute, "DELETE FROM sessions WHERE id = ?", (session_id,))
        self._session_locks.pop(session_id, None)
        logger.info("Deleted session %s", session_id)

    # ------------------------------------------------------------------ messages

    async def append_message(
        self,
        *,
        session_id: str,
        role: MessageRole | str,
        parts: Iterable[Part] = (),
        finish_reason: Optional[str] = None,
    ) -> MessageRecord:
        role = MessageRole(role)
        message_id = uuid4().hex
        new_parts = list(parts)

        def _insert(connection: sqlite3.Connection) -> MessageRecord:
            if not _session_exists(connection, session_id):
                raise SessionNotFoundError(session_id)

            row = connection.execute(
                "SELECT COALESCE(MAX(seq), 0) AS max_seq, MAX(created_at) AS last_created "
                "FROM messages WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            next_seq = int(row["max_seq"] or 0) + 1
            now = _utc_now_str()
            # Keep created_at monotonic even if the wall clock steps backwards.
            created_at = max(now, row["last_created"]) if row["last_created"] else now

            connection.execute(
                "INSERT INTO messages (id, session_id, role, seq, finish_reason, error, created_at)"
                " VALUES (?, ?, ?, ?, ?, ?, ?)",
                (message_id, session_id, role.value, next_seq, finish_reason, None, created_at),
            )
            for index, part in enumerate(new_parts, start=1):
                part.seq = index
                _insert_part(connection, session_id, message_id, part, created_at)

            _touch_session(connection, session_id, created_at, _preview_of(new_parts), new_message=True)
            return MessageRecord(
                id=message_id,
                session_id=session_id,
                role=role,
                seq=next_seq,
                created_at=_parse_ts(created_at),
                parts=new_parts,
                finish_reason=finish_reason,
            )

        async with self._lock_for(session_id):
            return await self._call(self._transaction, _insert)

    async def append_part(self, *, session_id: str, message_id: str, part: Part) -> Part:
        """Append one part to the end of an existing message."""

        def _insert(connection: sqlite3.Connection) -> Part:
            if not _message_exists(connection, session_id, message_id):
                raise MessageNotFoundError(session_id, message_id)
            row = connection.execute(
                "SELECT COALESCE(MAX(seq), 0) AS max_seq FROM parts WHERE message_id = ?",
                (message_id,),
            ).fetchone()
            part.seq = int(row["max_seq"] or 0) + 1
            now = _utc_now_str()
            _insert_part(connection, session_id, message_id, part, now)
            _touch_session(connection, session_id, now, _preview_of([part]), new_message=False)
            return part

        async with self._lock_for(session_id):
            return await self._call(self._transaction, _insert)

    async def update_part(
        self,
        *,
        session_id: str,
        message_id: str,
        part_id: str,
        mutation: ToolCallUpdate,
    ) -> ToolCallPart:
        """Move a pending tool-call part to ``completed`` or ``failed``."""
        if not mutation.state.is_terminal:
            raise InvalidPartMutation(f"Tool call can only move to a terminal state, got {mutation.state.value}")

        def _update(connection: sqlite3.Connection) -> ToolCallPart:
            row = connection.execute(
                "SELECT * FROM parts WHERE id = ? AND message_id = ? AND session_id = ?",
                (part_id, message_id, session_id),
            ).fetchone()
            if row is None:
                raise PartNotFoundError(message_id, part_id)
            if row["type"] != PartType.TOOL_CALL.value:
                raise InvalidPartMutation(f"Part {part_id} is a {row['type']} part and cannot be mutated")
            if row["state"] != ToolCallState.PENDING.value:
                raise InvalidPartMutation(f"Tool call {part_id} is already {row['state']}")

            connection.execute(
                "UPDATE parts SET state = ?, error = ?, updated_at = ? WHERE id = ? AND message_id = ?",
                (mutation.state.value, mutation.error, _utc_now_str(), part_id, message_id),
            )
            part = _row_to_tool_call(row)
            part.state = mutation.state
            part.error = mutation.error
            return part

        async with self._lock_for(session_id):
            return await self._call(self._transaction, _update)

    async def finish_message(
        self,
        *,
        session_id: str,
        message_id: str,
        finish_reason: str,
        error: Optional[str] = None,
    ) -> None:
        """Record how a message ended (stop, cancelled, error)."""
        async with self._lock_for(session_id):
            count = await self._call(
                self._execute,
                "UPDATE messages SET finish_reason = ?, error = ? WHERE id = ? AND session_id = ?",
                (finish_reason, error, message_id, session_id),
            )
        if count == 0:
            raise MessageNotFoundError(session_id, message_id)

    async def get_messages(self, session_id: str) -> list[MessageRecord]:
        def _load(connection: sqlite3.Connection) -> list[MessageRecord]:
            if not _session_exists(connection, session_id):
                raise SessionNotFoundError(session_id)
            message_rows = connection.execute(
                "SELECT id, session_id, role, seq, finish_reason, error, created_at "
                "FROM messages WHERE session_id = ? ORDER BY seq ASC",
                (session_id,),
            ).fetchall()
            part_rows = connection.execute(
                "SELECT parts.* FROM parts JOIN messages ON messages.id = parts.message_id "
                "WHERE parts.session_id = ? ORDER BY messages.seq ASC, parts.seq ASC",
                (session_id,),
            ).fetchall()
            return _assemble_messages(message_rows, part_rows)

        return await self._call(self._transaction, _load)

    async def get_first_exchange(self, session_id: str) -> list[MessageRecord]:
        messages = await self.get_messages(session_id)
        return messages[:4]

    # ------------------------------------------------------------------ plumbing

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._session_locks[session_id] = lock
        return lock

    async def _call(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as exc:
            logger.error("Session store operation failed: %s", exc)
            raise PersistenceError(str(exc)) from exc

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        connection = sqlite3.connect(self._db_path, timeout=30)
        connection.row_factory = sqlite3.Row
        try:
            _ensure_pragmas(connection)
            yield connection
            connection.commit()
        except BaseException:
            connection.rollback()
            raise
        finally:
            connection.close()

    def _transaction(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        with self._connection() as connection:
            return fn(connection)

    def _execute(self, query: str, params: tuple = ()) -> int:
        with self._connection() as connection:
            return connection.execute(query, params).rowcount

    def _fetchall(self, query: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._connection() as connection:
            return connection.execute(query, params).fetchall()

    def _fetchone(self, query: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._connection() as connection:
            return connection.execute(query, params).fetchone()

    @staticmethod
    def _row_to_session(row: sqlite3.Row | None) -> Optional[SessionRecord]:
        if row is None:
            return None
        return SessionRecord(
            id=row["id"],
            title=row["title"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            message_count=int(row["message_count"] or 0),
            last_message_preview=row["last_message_preview"],
            parent_id=row["parent_id"],
        )


def _migrate_sessions(connection: sqlite3.Connection) -> None:
    columns = {row["name"] for row in connection.execute("PRAGMA table_info(sessions)").fetchall()}
    if "parent_id" not in columns:
        connection.execute("ALTER TABLE sessions ADD COLUMN parent_id TEXT")


def _session_exists(connection: sqlite3.Connection, session_id: str) -> bool:
    row = connection.execute("SELECT 1 FROM sessions WHERE id = ?", (session_id,)).fetchone()
    return row is not None


def _message_exists(connection: sqlite3.Connection, session_id: str, message_id: str) -> bool:
    row = connection.execute(
        "SELECT 1 FROM messages WHERE id = ? AND session_id = ?",
        (message_id, session_id),
    ).fetchone()
    return row is not None


def _touch_session(
    connection: sqlite3.Connection,
    session_id: str,
    now: str,
    preview: Optional[str],
    *,
    new_message: bool,
) -> None:
    connection.execute(
        "UPDATE sessions SET updated_at = ?, "
        "last_message_preview = COALESCE(?, last_message_preview), "
        "message_count = message_count + ? WHERE id = ?",
        (now, preview, 1 if new_message else 0, session_id),
    )


def _insert_part(
    connection: sqlite3.Connection,
    session_id: str,
    message_id: str,
    part: Part,
    now: str,
) -> None:
    if isinstance(part, ToolResultPart):
        row = connection.execute(
            "SELECT 1 FROM parts WHERE session_id = ? AND call_id = ? AND type = ?",
            (session_id, part.call_id, PartType.TOOL_CALL.value),
        ).fetchone()
        if row is None:
            raise PartReferenceError(
                f"Tool result {part.id} references unknown tool call {part.call_id}"
            )

    columns = _part_columns(part)
    connection.execute(
        "INSERT INTO parts (id, message_id, session_id, seq, type, content, tool_name, call_id, state,"
        " success, error, payload, created_at, updated_at)"
        " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            part.id,
            message_id,
            session_id,
            part.seq,
            part.type.value,
            columns.get("content"),
            columns.get("tool_name"),
            columns.get("call_id"),
            columns.get("state"),
            columns.get("success"),
            columns.get("error"),
            columns.get("payload"),
            now,
            now,
        ),
    )


def _part_columns(part: Part) -> dict[str, Any]:
    if isinstance(part, (TextPart, ReasoningPart)):
        return {"content": part.text}
    if isinstance(part, ToolCallPart):
        return {
            "tool_name": part.tool_name,
            "call_id": part.call_id,
            "state": part.state.value,
            "error": part.error,
            "payload": json.dumps(part.args, ensure_ascii=False, default=str),
        }
    if isinstance(part, ToolResultPart):
        return {
            "tool_name": part.tool_name,
            "call_id": part.call_id,
            "success": 1 if part.success else 0,
            "error": part.error,
            "payload": json.dumps(
                {"output": part.output, "metadata": part.metadata},
                ensure_ascii=False,
                default=str,
            ),
        }
    raise TypeError(f"Unsupported part type: {type(part).__name__}")


def _row_to_tool_call(row: sqlite3.Row) -> ToolCallPart:
    return ToolCallPart(
        tool_name=row["tool_name"],
        call_id=row["call_id"],
        args=json.loads(row["payload"]) if row["payload"] else {},
        state=ToolCallState(row["state"]),
        error=row["error"],
        id=row["id"],
        seq=row["seq"],
    )


def _row_to_part(row: sqlite3.Row) -> Part:
    part_type = PartType(row["type"])
    if part_type is PartType.TEXT:
        return TextPart(text=row["content"] or "", id=row["id"], seq=row["seq"])
    if part_type is PartType.REASONING:
        return ReasoningPart(text=row["content"] or "", id=row["id"], seq=row["seq"])
    if part_type is PartType.TOOL_CALL:
        return _row_to_tool_call(row)
    payload = json.loads(row["payload"]) if row["payload"] else {}
    return ToolResultPart(
        call_id=row["call_id"],
        tool_name=row["tool_name"],
        output=payload.get("output"),
        success=bool(row["success"]),
        error=row["error"],
        metadata=payload.get("metadata"),
        id=row["id"],
        seq=row["seq"],
    )


def _assemble_messages(message_rows: list[sqlite3.Row], part_rows: list[sqlite3.Row]) -> list[MessageRecord]:
    messages: list[MessageRecord] = []
    by_id: dict[str, MessageRecord] = {}
    for row in message_rows:
        record = MessageRecord(
            id=row["id"],
            session_id=row["session_id"],
            role=MessageRole(row["role"]),
            seq=row["seq"],
            created_at=_parse_ts(row["created_at"]),
            finish_reason=row["finish_reason"],
            error=row["error"],
        )
        messages.append(record)
        by_id[record.id] = record
    for row in part_rows:
        by_id[row["message_id"]].parts.append(_row_to_part(row))
    return messages


def _preview_of(parts: Iterable[Part]) -> Optional[str]:
    text = "".join(part.text for part in parts if isinstance(part, TextPart)).strip()
    return text[:_PREVIEW_LENGTH] if text else None


def _utc_now_str() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _parse_ts(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1]
    return datetime.fromisoformat(value)
