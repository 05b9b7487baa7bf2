from .database import SQLiteMemoryDB
from .session_store import DEFAULT_SESSION_TITLE, SessionNotFoundError, SessionStore

__all__ = [
    "DEFAULT_SESSION_TITLE",
    "SQLiteMemoryDB",
    "SessionNotFoundError",
    "SessionStore",
]
