"""SQLite-backed note storage.

Notes are only written after the user confirms a draft, so every row here is
a committed note. Each user keeps at most ``max_notes`` notes; the oldest are
dropped when the cap is exceeded.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class Note:
    """A saved note."""

    id: str
    user_id: str
    text: str
    created_at: int  # epoch milliseconds


class NoteStore:
    """SQLite-backed per-user note storage."""

    def __init__(self, db_path: Path, max_notes: int = 50):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.max_notes = max_notes
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self) -> None:
        with self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS notes (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT UNIQUE NOT NULL,
                    user_id TEXT NOT NULL,
                    text TEXT NOT NULL,
                    created_at INTEGER NOT NULL
                )
                """
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_notes_user ON notes(user_id, seq DESC)"
            )

    def add_note(self, user_id: str, text: str) -> Note:
        if not text or not text.strip():
            raise ValueError("Note text cannot be empty")
        note = Note(
            id=uuid.uuid4().hex,
            user_id=str(user_id),
            text=text.strip(),
            created_at=int(time.time() * 1000),
        )
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO notes (id, user_id, text, created_at) VALUES (?, ?, ?, ?)",
                (note.id, note.user_id, note.text, note.created_at),
            )
            self._conn.execute(
                """DELETE FROM notes
                   WHERE user_id = ? AND seq NOT IN (
                       SELECT seq FROM notes WHERE user_id = ? ORDER BY seq DESC LIMIT ?
                   )""",
                (note.user_id, note.user_id, self.max_notes),
            )
        logger.info(f"Saved note {note.id[:8]} for user {note.user_id}")
        return note

    def list_notes(self, user_id: str, limit: int = 5) -> list[Note]:
        """Most recent notes first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, user_id, text, created_at FROM notes "
                "WHERE user_id = ? ORDER BY seq DESC LIMIT ?",
                (str(user_id), limit),
            ).fetchall()
        return [
            Note(id=row["id"], user_id=row["user_id"], text=row["text"], created_at=row["created_at"])
            for row in rows
        ]

    def count(self, user_id: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM notes WHERE user_id = ?", (str(user_id),)
            ).fetchone()
        return int(row[0])

    def close(self) -> None:
        with self._lock:
            self._conn.close()
