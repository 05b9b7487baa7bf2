from __future__ import annotations

import json
import uuid
from typing import Any

from .database import SQLiteMemoryDB
from .time_utils import to_iso, utc_now

DEFAULT_SESSION_TITLE = "New Health Query"


class SessionNotFoundError(KeyError):
    pass


def _json_dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


class SessionStore:
    """Persists chat sessions and their append-only turn history.

    Turns are stored as the JSON dicts produced by ``Turn.to_dict()``; this
    module never interprets them beyond their ``kind`` tag.
    """

    def __init__(self, db: SQLiteMemoryDB) -> None:
        self._db = db

    def create_session(self, *, language: str, title: str | None = None) -> dict[str, Any]:
        now = to_iso(utc_now())
        session = {
            "id": uuid.uuid4().hex,
            "title": (title or "").strip() or DEFAULT_SESSION_TITLE,
            "language": language,
            "created_at": now,
            "updated_at": now,
        }
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO chat_sessions (id, title, language, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (session["id"], session["title"], language, now, now),
            )
        return session

    def get_session(self, session_id: str, *, with_history: bool = False) -> dict[str, Any]:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT id, title, language, created_at, updated_at FROM chat_sessions WHERE id = ?",
                (session_id,),
            ).fetchone()
        if not row:
            raise SessionNotFoundError(session_id)
        session = dict(row)
        if with_history:
            session["history"] = self.load_history(session_id)
        return session

    def list_sessions(self) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT s.id, s.title, s.language, s.created_at, s.updated_at,
                       (SELECT COUNT(*) FROM chat_turns t WHERE t.session_id = s.id) AS turn_count
                FROM chat_sessions s
                ORDER BY s.updated_at DESC, s.created_at DESC
                """
            ).fetchall()
        return [dict(row) for row in rows]

    def update_session(
        self,
        session_id: str,
        *,
        title: str | None = None,
        language: str | None = None,
    ) -> dict[str, Any]:
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE chat_sessions
                SET title = COALESCE(?, title),
                    language = COALESCE(?, language),
                    updated_at = ?
                WHERE id = ?
                """,
                (title, language, now, session_id),
            )
            if cursor.rowcount == 0:
                raise SessionNotFoundError(session_id)
        return self.get_session(session_id)

    def delete_session(self, session_id: str) -> None:
        with self._db.connection() as conn:
            cursor = conn.execute("DELETE FROM chat_sessions WHERE id = ?", (session_id,))
            if cursor.rowcount == 0:
                raise SessionNotFoundError(session_id)

    def append_turns(self, session_id: str, turns: list[dict[str, Any]]) -> int:
        """Appends turns after the current tail; returns the new history length."""
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            exists = conn.execute("SELECT 1 FROM chat_sessions WHERE id = ?", (session_id,)).fetchone()
            if not exists:
                raise SessionNotFoundError(session_id)
            row = conn.execute(
                "SELECT COALESCE(MAX(seq), -1) AS last_seq FROM chat_turns WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            seq = int(row["last_seq"])
            for turn in turns:
                seq += 1
                conn.execute(
                    """
                    INSERT INTO chat_turns (id, session_id, seq, kind, payload_json, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (uuid.uuid4().hex, session_id, seq, str(turn.get("kind", "")), _json_dumps(turn), now),
                )
            if turns:
                conn.execute("UPDATE chat_sessions SET updated_at = ? WHERE id = ?", (now, session_id))
            return seq + 1

    def load_history(self, session_id: str) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT payload_json FROM chat_turns WHERE session_id = ? ORDER BY seq ASC",
                (session_id,),
            ).fetchall()
        return [json.loads(row["payload_json"]) for row in rows]

    def record_tool_event(
        self,
        *,
        session_id: str | None,
        call_id: str,
        tool_name: str,
        status: str,
        details: dict[str, Any],
    ) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO tool_events (id, session_id, call_id, tool_name, status, details_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (uuid.uuid4().hex, session_id, call_id, tool_name, status, _json_dumps(details), to_iso(utc_now())),
            )

    def list_tool_events(self, session_id: str) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT call_id, tool_name, status, details_json, created_at
                FROM tool_events
                WHERE session_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (session_id,),
            ).fetchall()
        return [
            {
                "call_id": row["call_id"],
                "tool_name": row["tool_name"],
                "status": row["status"],
                "details": json.loads(row["details_json"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]
