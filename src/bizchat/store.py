"""Concrete implementations for conversation stores.

A store persists whole ``ConversationSession`` snapshots. Sessions are read
and written as a unit (read-modify-write per turn), so implementations only
need to save and load complete documents.
"""

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .models import ConversationSession

logger = logging.getLogger(__name__)


def _next_numeric_id(existing: Iterable[str]) -> str:
    numbers = [int(i) for i in existing if i.isdigit()]
    return f"{max(numbers, default=0) + 1:03d}"


class Store(ABC):
    """Interface for saving and loading conversation sessions."""

    @abstractmethod
    def load_session(self, user_id: str, session_id: str) -> Optional[ConversationSession]:
        """Loads a single session, or None if it does not exist."""
        pass

    @abstractmethod
    def save_session(self, user_id: str, session: ConversationSession) -> None:
        """Saves a single session, replacing any previous snapshot."""
        pass

    @abstractmethod
    def list_sessions(self, user_id: str) -> List[str]:
        """Lists session IDs for a user, most recently updated first."""
        pass

    @abstractmethod
    def get_next_session_id(self, user_id: str) -> str:
        """Generates a new, unique session ID for a user."""
        pass

    @abstractmethod
    def delete_session(self, user_id: str, session_id: str) -> bool:
        """Deletes a session. Returns False if it did not exist."""
        pass


class InMemory(Store):
    """Keeps sessions in a dictionary for the lifetime of the process."""

    def __init__(self):
        self._store: Dict[Tuple[str, str], ConversationSession] = {}

    def load_session(self, user_id, session_id):
        session = self._store.get((user_id, session_id))
        return session.model_copy(deep=True) if session else None

    def save_session(self, user_id, session):
        self._store[(user_id, session.id)] = session.model_copy(deep=True)

    def list_sessions(self, user_id):
        sessions = [s for (uid, _), s in self._store.items() if uid == user_id]
        sessions.sort(key=lambda s: (s.updated_at, s.id), reverse=True)
        return [s.id for s in sessions]

    def get_next_session_id(self, user_id):
        return _next_numeric_id(sid for uid, sid in self._store if uid == user_id)

    def delete_session(self, user_id, session_id):
        return self._store.pop((user_id, session_id), None) is not None


class File(Store):
    """Saves each session as ``<base_dir>/<user_id>/<session_id>/session.json``."""

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _session_file(self, user_id: str, session_id: str) -> Path:
        return self.base_dir / user_id / session_id / "session.json"

    def load_session(self, user_id, session_id):
        path = self._session_file(user_id, session_id)
        if not path.exists():
            return None
        try:
            return ConversationSession.model_validate_json(path.read_text(encoding="utf-8"))
        except ValueError:
            logger.error("Corrupt session file %s", path, exc_info=True)
            return None

    def save_session(self, user_id, session):
        path = self._session_file(user_id, session.id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(session.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(path)

    def list_sessions(self, user_id):
        user_dir = self.base_dir / user_id
        if not user_dir.exists():
            return []
        entries = []
        for session_dir in user_dir.iterdir():
            path = session_dir / "session.json"
            if not path.exists():
                continue
            try:
                updated_at = json.loads(path.read_text(encoding="utf-8")).get("updated_at", "")
            except ValueError:
                continue
            entries.append((updated_at, session_dir.name))
        entries.sort(reverse=True)
        return [session_id for _, session_id in entries]

    def get_next_session_id(self, user_id):
        user_dir = self.base_dir / user_id
        if not user_dir.exists():
            return _next_numeric_id([])
        return _next_numeric_id(p.name for p in user_dir.iterdir() if p.is_dir())

    def delete_session(self, user_id, session_id):
        path = self._session_file(user_id, session_id)
        if not path.exists():
            return False
        path.unlink()
        try:
            path.parent.rmdir()
        except OSError:
            pass
        return True


class SQLite(Store):
    """Saves sessions as JSON documents in a single SQLite table."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_db(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    user_id TEXT NOT NULL,
                    id TEXT NOT NULL,
                    title TEXT,
                    status TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    data TEXT NOT NULL,
                    PRIMARY KEY (user_id, id)
                )
                """
            )

    def load_session(self, user_id, session_id):
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT data FROM sessions WHERE user_id = ? AND id = ?",
                (user_id, session_id),
            ).fetchone()
        if row is None:
            return None
        return ConversationSession.model_validate_json(row[0])

    def save_session(self, user_id, session):
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO sessions (user_id, id, title, status, updated_at, data)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (user_id, id) DO UPDATE SET
                    title = excluded.title,
                    status = excluded.status,
                    updated_at = excluded.updated_at,
                    data = excluded.data
                """,
                (
                    user_id,
                    session.id,
                    session.title,
                    session.status.value,
                    session.updated_at.isoformat(),
                    session.model_dump_json(),
                ),
            )

    def list_sessions(self, user_id):
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT id FROM sessions WHERE user_id = ? ORDER BY updated_at DESC, id DESC",
                (user_id,),
            ).fetchall()
        return [row[0] for row in rows]

    def get_next_session_id(self, user_id):
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT id FROM sessions WHERE user_id = ?", (user_id,)
            ).fetchall()
        return _next_numeric_id(row[0] for row in rows)

    def delete_session(self, user_id, session_id):
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM sessions WHERE user_id = ? AND id = ?", (user_id, session_id)
            )
        return cursor.rowcount > 0
