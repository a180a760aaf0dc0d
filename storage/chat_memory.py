"""SQLite-backed storage for per-user chat history.

The generation prompt carries the last few turns of the conversation so
follow-up questions make sense. Only a short window is kept per user; older
turns are pruned on every append.

Usage:
    from storage.chat_memory import ChatMemoryStore

    store = ChatMemoryStore(Path("~/.local/state/jarvis/chat_memory.db"), max_turns=8)
    store.append_turn(user_id="42", role="user", content="Hello")
    history = store.get_recent_turns(user_id="42")
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

VALID_ROLES = ("user", "assistant")


def _now_utc_iso() -> str:
    """Return current UTC time as ISO8601 string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


@dataclass
class ConversationTurn:
    """A single turn in a conversation."""

    id: int
    user_id: str
    role: str  # "user" or "assistant"
    content: str
    created_at: str  # ISO8601 UTC

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at,
        }


class ChatMemoryStore:
    """SQLite-backed storage for chat conversation history.

    Attributes:
        db_path: Path to the SQLite database file.
        max_turns: Number of turns retained per user.
    """

    def __init__(self, db_path: Path, max_turns: int = 8):
        """Initialize the chat memory store.

        Args:
            db_path: Path to SQLite database file. Parent directories
                     will be created if they don't exist.
            max_turns: Turns kept per user; older ones are pruned.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.max_turns = max_turns
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS conversation_turns (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            self._conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_conversation_turns_user
                ON conversation_turns(user_id, id DESC)
                """
            )

    def append_turn(self, user_id: str, role: str, content: str) -> int:
        """Append a conversation turn and prune the user's history.

        Raises:
            ValueError: If role is not valid or content is empty.
        """
        if role not in VALID_ROLES:
            raise ValueError(f"Invalid role: {role}")
        if not content or not content.strip():
            raise ValueError("Content cannot be empty")

        user_id = str(user_id)
        with self._lock, self._conn:
            cursor = self._conn.execute(
                """INSERT INTO conversation_turns (user_id, role, content, created_at)
                   VALUES (?, ?, ?, ?)""",
                (user_id, role, content.strip(), _now_utc_iso()),
            )
            turn_id = int(cursor.lastrowid)
            self._conn.execute(
                """DELETE FROM conversation_turns
                   WHERE user_id = ? AND id NOT IN (
                       SELECT id FROM conversation_turns
                       WHERE user_id = ?
                       ORDER BY id DESC
                       LIMIT ?
                   )""",
                (user_id, user_id, self.max_turns),
            )
        logger.debug(f"Stored conversation turn {turn_id} for user {user_id}: {role}")
        return turn_id

    def get_recent_turns(self, user_id: str, limit: int | None = None) -> list[ConversationTurn]:
        """Retrieve recent turns for a user, oldest first."""
        limit = limit or self.max_turns
        with self._lock:
            rows = self._conn.execute(
                """SELECT id, user_id, role, content, created_at
                   FROM conversation_turns
                   WHERE user_id = ?
                   ORDER BY id DESC
                   LIMIT ?""",
                (str(user_id), limit),
            ).fetchall()

        return [
            ConversationTurn(
                id=row["id"],
                user_id=row["user_id"],
                role=row["role"],
                content=row["content"],
                created_at=row["created_at"],
            )
            for row in reversed(rows)
        ]

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()
        logger.debug(f"Closed chat memory store: {self.db_path}")
