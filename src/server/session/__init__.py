"""Session management package providing SQLite-backed persistence and APIs."""

from .compaction import compact_session, compaction_status
from .dependencies import get_context, get_event_bus, get_run_manager, get_session_store
from .store import SQLiteSessionStore

__all__ = [
    "SQLiteSessionStore",
    "compact_session",
    "compaction_status",
    "get_context",
    "get_event_bus",
    "get_run_manager",
    "get_session_store",
]
