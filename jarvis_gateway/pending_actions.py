"""Pending action store for the draft/confirm/edit/cancel workflow.

Holds at most one unconfirmed action per user. Actions expire after a TTL;
expiry is lazy: reads simply ignore expired rows, and the reminder
scheduler calls ``cleanup_expired`` periodically to delete them.
"""

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 30 * 60


class PendingIntent(Enum):
    """Intents that go through the confirmation workflow."""
    CREATE_NOTE = "create_note"


class PendingMode(Enum):
    """Where a pending action is in its lifecycle."""
    DRAFT = "draft"
    EDITING = "editing"


@dataclass
class PendingAction:
    """An action awaiting Save/Edit/Cancel.

    Attributes:
        intent: What will be committed on save
        fields: Draft payload (notes use the "text" key)
        mode: DRAFT while awaiting a decision, EDITING while awaiting replacement text
        created_at: Epoch seconds when the draft was (re)written
        expires_at: Epoch seconds after which the draft is gone
    """
    intent: PendingIntent
    fields: Dict[str, str] = field(default_factory=dict)
    mode: PendingMode = PendingMode.DRAFT
    created_at: float = 0.0
    expires_at: float = 0.0

    def with_mode(self, mode: PendingMode) -> "PendingAction":
        return replace(self, mode=mode)

    def with_fields(self, fields: Dict[str, str]) -> "PendingAction":
        return replace(self, fields=dict(fields))


class PendingStateStore(Protocol):
    durable: bool

    def set_pending(self, user_id: str, action: PendingAction) -> PendingAction: ...

    def get_pending(self, user_id: str) -> Optional[PendingAction]: ...

    def clear_pending(self, user_id: str) -> None: ...


class PendingActionStore:
    """SQLite-based store for pending actions, one row per user."""

    durable = True

    def __init__(
        self,
        db_path: Path,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        now_fn: Optional[Callable[[], float]] = None,
    ):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file
            ttl_seconds: Lifetime of a pending action, reset on every write
            now_fn: Clock override for tests
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.ttl_seconds = ttl_seconds
        self.now_fn = now_fn or time.time
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self):
        """Initialize database schema."""
        with self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS pending_actions (
                    user_id TEXT PRIMARY KEY,
                    intent TEXT NOT NULL,
                    fields_json TEXT NOT NULL,
                    mode TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    expires_at REAL NOT NULL
                )
            """)

    def set_pending(self, user_id: str, action: PendingAction) -> PendingAction:
        """Store a pending action, replacing any existing one and resetting its TTL.

        Returns:
            The stored action with its timestamps filled in
        """
        now = self.now_fn()
        stored = replace(action, created_at=now, expires_at=now + self.ttl_seconds)
        with self._lock, self._conn:
            self._conn.execute("""
                INSERT OR REPLACE INTO pending_actions
                (user_id, intent, fields_json, mode, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                str(user_id),
                stored.intent.value,
                json.dumps(stored.fields, ensure_ascii=False),
                stored.mode.value,
                stored.created_at,
                stored.expires_at,
            ))
        logger.debug(f"Stored pending {stored.intent.value} ({stored.mode.value}) for user {user_id}")
        return stored

    def get_pending(self, user_id: str) -> Optional[PendingAction]:
        """Get the user's pending action, or None if absent or expired."""
        with self._lock:
            row = self._conn.execute("""
                SELECT * FROM pending_actions
                WHERE user_id = ? AND expires_at > ?
            """, (str(user_id), self.now_fn())).fetchone()
        if row is None:
            return None
        return PendingAction(
            intent=PendingIntent(row["intent"]),
            fields=json.loads(row["fields_json"]),
            mode=PendingMode(row["mode"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

    def clear_pending(self, user_id: str) -> None:
        """Clear the user's pending action."""
        with self._lock, self._conn:
            self._conn.execute(
                "DELETE FROM pending_actions WHERE user_id = ?", (str(user_id),)
            )
        logger.debug(f"Cleared pending action for user {user_id}")

    def cleanup_expired(self) -> int:
        """Remove expired pending actions.

        Returns:
            Number of rows deleted
        """
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "DELETE FROM pending_actions WHERE expires_at <= ?", (self.now_fn(),)
            )
            deleted = cursor.rowcount

        if deleted > 0:
            logger.info(f"Cleaned up {deleted} expired pending actions")

        return deleted

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class InMemoryPendingActionStore:
    """Dict-backed pending action store.

    NOT durable: drafts are lost when the process exits. Only suitable for
    demos and tests.
    """

    durable = False

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        now_fn: Optional[Callable[[], float]] = None,
    ):
        self.ttl_seconds = ttl_seconds
        self.now_fn = now_fn or time.time
        self._lock = threading.Lock()
        self._actions: Dict[str, PendingAction] = {}

    def set_pending(self, user_id: str, action: PendingAction) -> PendingAction:
        now = self.now_fn()
        stored = replace(
            action,
            fields=dict(action.fields),
            created_at=now,
            expires_at=now + self.ttl_seconds,
        )
        with self._lock:
            self._actions[str(user_id)] = stored
        return stored

    def get_pending(self, user_id: str) -> Optional[PendingAction]:
        with self._lock:
            action = self._actions.get(str(user_id))
            if action is None:
                return None
            if action.expires_at <= self.now_fn():
                del self._actions[str(user_id)]
                return None
            return replace(action, fields=dict(action.fields))

    def clear_pending(self, user_id: str) -> None:
        with self._lock:
            self._actions.pop(str(user_id), None)

    def cleanup_expired(self) -> int:
        now = self.now_fn()
        with self._lock:
            expired = [uid for uid, a in self._actions.items() if a.expires_at <= now]
            for uid in expired:
                del self._actions[uid]
        return len(expired)

    def close(self) -> None:
        with self._lock:
            self._actions.clear()
