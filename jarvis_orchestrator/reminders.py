"""Reminder scheduling and persistence for Jarvis.

Reminders are fire-and-forget: the scheduler removes a due entry from the
store *before* delivering it, so a crash or a concurrent poll can lose a
reminder but never deliver it twice.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import re
import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)

REMINDER_PREFIX = "⏰ Reminder: "
DEFAULT_BATCH_SIZE = 50
LIST_LIMIT = 25
MIN_ID_PREFIX = 4
HOUSEKEEPING_INTERVAL_SECONDS = 5 * 60

REMINDER_USAGE = (
    "Examples:\n"
    "• remind in 10 minutes buy water\n"
    "• remind tomorrow at 09:00 pay the internet bill\n"
    "• напомни через 2 часа позвонить маме"
)

_TRIGGER = r"(?:remind|напомни)(?:\s+(?:me|мне))?"

_RELATIVE_RE = re.compile(
    rf"^{_TRIGGER}\s+(?:in|через)\s+(?P<amount>\d+)\s*(?P<unit>[^\W\d_]+)\s+(?P<body>.+)$",
    re.IGNORECASE | re.DOTALL,
)

_TOMORROW_RE = re.compile(
    rf"^{_TRIGGER}\s+(?:tomorrow|завтра)\s+(?:at|в)\s+(?P<hour>\d{{1,2}}):(?P<minute>\d{{2}})\s+(?P<body>.+)$",
    re.IGNORECASE | re.DOTALL,
)

# Unit tokens are matched by prefix so "min", "mins", "minutes", "минут",
# "минуты" all resolve to minutes.
_UNIT_ROOTS: tuple[tuple[tuple[str, ...], int], ...] = (
    (("sec", "сек"), 1000),
    (("min", "мин"), 60 * 1000),
    (("hour", "hr", "час"), 60 * 60 * 1000),
)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ReminderEntry:
    """Stored reminder record. Timestamps are epoch milliseconds."""

    id: str
    owner_channel: str
    payload_text: str
    fire_at: int
    created_at: int

    @property
    def short_id(self) -> str:
        return self.id[:8]


@dataclass
class ParsedReminder:
    """Result of parsing a reminder command. ``fire_at_ms`` is epoch milliseconds."""

    fire_at_ms: int
    body: str

    @property
    def fire_at(self) -> datetime:
        return datetime.fromtimestamp(self.fire_at_ms / 1000)


class DueQueue(Protocol):
    """Time-ordered reminder storage polled by the scheduler."""

    durable: bool

    def add_reminder(
        self,
        owner_channel: str,
        payload_text: str,
        fire_at: int,
        created_at: Optional[int] = None,
    ) -> str: ...

    def list_reminders(self, owner_channel: Optional[str] = None, limit: int = LIST_LIMIT) -> list[ReminderEntry]: ...

    def cancel_reminder(self, owner_channel: str, id_prefix: str) -> Optional[str]: ...

    def claim_due(self, now: int, limit: int = DEFAULT_BATCH_SIZE) -> list[ReminderEntry]: ...

    def count(self) -> int: ...

    def close(self) -> None: ...


class ReminderStore:
    """SQLite-backed reminder storage.

    The ``fire_at`` column index is the due index: every live row has exactly
    one index record, and removing the row removes it from the index.
    """

    durable = True

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self) -> None:
        with self._conn:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS reminders (
                    id TEXT PRIMARY KEY,
                    owner_channel TEXT NOT NULL,
                    payload_text TEXT NOT NULL,
                    fire_at INTEGER NOT NULL,
                    created_at INTEGER NOT NULL
                )
                """
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_reminders_fire_at ON reminders(fire_at)"
            )

    def add_reminder(
        self,
        owner_channel: str,
        payload_text: str,
        fire_at: int,
        created_at: Optional[int] = None,
    ) -> str:
        reminder_id = uuid.uuid4().hex
        created_at = created_at or now_ms()
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO reminders (id, owner_channel, payload_text, fire_at, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (reminder_id, str(owner_channel), payload_text, int(fire_at), created_at),
            )
        logger.debug(f"Stored reminder {reminder_id} for channel {owner_channel} at {fire_at}")
        return reminder_id

    def list_reminders(self, owner_channel: Optional[str] = None, limit: int = LIST_LIMIT) -> list[ReminderEntry]:
        if owner_channel is None:
            query = "SELECT * FROM reminders ORDER BY fire_at ASC LIMIT ?"
            params: tuple = (limit,)
        else:
            query = "SELECT * FROM reminders WHERE owner_channel = ? ORDER BY fire_at ASC LIMIT ?"
            params = (str(owner_channel), limit)
        with self._lock:
            rows = list(self._conn.execute(query, params))
        return [self._row_to_entry(row) for row in rows]

    def cancel_reminder(self, owner_channel: str, id_prefix: str) -> Optional[str]:
        """Delete the single reminder of ``owner_channel`` whose id starts with ``id_prefix``.

        Returns the full id, or None when nothing (or more than one entry) matches.
        """
        id_prefix = id_prefix.strip().lower()
        if len(id_prefix) < MIN_ID_PREFIX:
            return None
        with self._lock, self._conn:
            rows = list(
                self._conn.execute(
                    "SELECT id FROM reminders WHERE owner_channel = ? AND id LIKE ?",
                    (str(owner_channel), f"{id_prefix}%"),
                )
            )
            if len(rows) != 1:
                return None
            reminder_id = rows[0]["id"]
            self._conn.execute("DELETE FROM reminders WHERE id = ?", (reminder_id,))
        return reminder_id

    def claim_due(self, now: int, limit: int = DEFAULT_BATCH_SIZE) -> list[ReminderEntry]:
        """Atomically remove and return entries with ``fire_at <= now``.

        ``limit`` of 0 means uncapped.
        """
        query = "SELECT * FROM reminders WHERE fire_at <= ? ORDER BY fire_at ASC, created_at ASC"
        params: tuple = (now,)
        if limit:
            query += " LIMIT ?"
            params = (now, limit)

        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
                rows = list(self._conn.execute(query, params))
                if rows:
                    ids = [row["id"] for row in rows]
                    placeholders = ",".join("?" for _ in ids)
                    self._conn.execute(
                        f"DELETE FROM reminders WHERE id IN ({placeholders})", ids
                    )
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
        return [self._row_to_entry(row) for row in rows]

    def count(self) -> int:
        with self._lock:
            return int(self._conn.execute("SELECT COUNT(*) FROM reminders").fetchone()[0])

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> ReminderEntry:
        return ReminderEntry(
            id=row["id"],
            owner_channel=row["owner_channel"],
            payload_text=row["payload_text"],
            fire_at=int(row["fire_at"]),
            created_at=int(row["created_at"]),
        )


class InMemoryReminderStore:
    """Heap-backed reminder storage.

    NOT durable: every scheduled reminder is lost when the process exits.
    Only suitable for demos and tests.
    """

    durable = False

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: dict[str, ReminderEntry] = {}
        self._heap: list[tuple[int, int, str]] = []
        self._seq = itertools.count()

    def add_reminder(
        self,
        owner_channel: str,
        payload_text: str,
        fire_at: int,
        created_at: Optional[int] = None,
    ) -> str:
        entry = ReminderEntry(
            id=uuid.uuid4().hex,
            owner_channel=str(owner_channel),
            payload_text=payload_text,
            fire_at=int(fire_at),
            created_at=created_at or now_ms(),
        )
        with self._lock:
            self._entries[entry.id] = entry
            heapq.heappush(self._heap, (entry.fire_at, next(self._seq), entry.id))
        return entry.id

    def list_reminders(self, owner_channel: Optional[str] = None, limit: int = LIST_LIMIT) -> list[ReminderEntry]:
        with self._lock:
            entries = [
                e for e in self._entries.values()
                if owner_channel is None or e.owner_channel == str(owner_channel)
            ]
        entries.sort(key=lambda e: (e.fire_at, e.created_at))
        return entries[:limit]

    def cancel_reminder(self, owner_channel: str, id_prefix: str) -> Optional[str]:
        id_prefix = id_prefix.strip().lower()
        if len(id_prefix) < MIN_ID_PREFIX:
            return None
        with self._lock:
            matches = [
                e.id for e in self._entries.values()
                if e.owner_channel == str(owner_channel) and e.id.startswith(id_prefix)
            ]
            if len(matches) != 1:
                return None
            # The heap record goes stale and is skipped by claim_due.
            del self._entries[matches[0]]
        return matches[0]

    def claim_due(self, now: int, limit: int = DEFAULT_BATCH_SIZE) -> list[ReminderEntry]:
        claimed: list[ReminderEntry] = []
        with self._lock:
            while self._heap and self._heap[0][0] <= now:
                if limit and len(claimed) >= limit:
                    break
                _, _, reminder_id = heapq.heappop(self._heap)
                entry = self._entries.pop(reminder_id, None)
                if entry is not None:
                    claimed.append(entry)
        return claimed

    def count(self) -> int:
        with self._lock:
            return len(self._entries)

    def close(self) -> None:
        with self._lock:
            self._entries.clear()
            self._heap.clear()


class ReminderScheduler(threading.Thread):
    """Background scheduler that dispatches reminders when due."""

    def __init__(
        self,
        store: DueQueue,
        publish_fn: Callable[[str, str], bool],
        interval_seconds: float = 1.0,
        batch_size: int = DEFAULT_BATCH_SIZE,
        now_fn: Optional[Callable[[], int]] = None,
        housekeeping_fn: Optional[Callable[[], object]] = None,
        housekeeping_interval: float = HOUSEKEEPING_INTERVAL_SECONDS,
    ):
        super().__init__(daemon=True, name="reminder-scheduler")
        self.store = store
        self.publish_fn = publish_fn
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.now_fn = now_fn or now_ms
        self.housekeeping_fn = housekeeping_fn
        self.housekeeping_interval = housekeeping_interval
        self._last_housekeeping: Optional[float] = None
        self._stop_event = threading.Event()

    def schedule(self, owner_channel: str, body: str, fire_at: int) -> str:
        return self.store.add_reminder(owner_channel, body, fire_at)

    def run(self) -> None:
        logger.info(
            f"Reminder scheduler started (interval={self.interval_seconds}s, "
            f"batch={self.batch_size or 'uncapped'}, durable={self.store.durable})"
        )
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception as exc:
                logger.error(f"Reminder scheduler error: {exc}", exc_info=True)
            self.run_housekeeping()
            self._stop_event.wait(self.interval_seconds)
        logger.info("Reminder scheduler stopped")

    def run_housekeeping(self) -> bool:
        """Call the housekeeping hook if its interval has elapsed. Returns True if it ran."""
        if self.housekeeping_fn is None:
            return False
        now = time.monotonic()
        if self._last_housekeeping is not None and now - self._last_housekeeping < self.housekeeping_interval:
            return False
        self._last_housekeeping = now
        try:
            self.housekeeping_fn()
        except Exception as exc:
            logger.warning(f"Scheduler housekeeping failed: {exc}")
        return True

    def run_once(self) -> int:
        """Fire every due reminder once. Returns the number delivered."""
        due = self.store.claim_due(self.now_fn(), self.batch_size)
        if not due:
            return 0
        sent = 0
        for entry in due:
            message = format_reminder_message(entry)
            try:
                delivered = self.publish_fn(entry.owner_channel, message)
            except Exception as exc:
                logger.error(f"Reminder {entry.short_id} delivery raised, dropping: {exc}")
                continue
            if delivered:
                sent += 1
            else:
                logger.warning(f"Reminder {entry.short_id} delivery failed, dropping")
        logger.info(f"Reminder poll fired {len(due)} entries, delivered {sent}")
        return sent

    def stop(self) -> None:
        self._stop_event.set()


def format_reminder_message(entry: ReminderEntry) -> str:
    return f"{REMINDER_PREFIX}{entry.payload_text}"


def parse_reminder(text: Optional[str], now: Optional[datetime] = None) -> Optional[ParsedReminder]:
    """Parse a reminder command into an epoch fire time and a body.

    Supported forms:
        remind [me] in <N> <seconds|minutes|hours> <body>
        remind [me] tomorrow at HH:MM <body>
    (and the Russian equivalents). Returns None when nothing matches.

    Relative delays are added to the epoch clock, so a DST change in
    between does not shift them. "tomorrow at" is local wall-clock time.
    """
    normalized = (text or "").strip()
    if not normalized:
        return None
    now = now or datetime.now()

    match = _RELATIVE_RE.match(normalized)
    if match:
        amount = int(match.group("amount"))
        body = match.group("body").strip()
        unit_ms = _resolve_unit(match.group("unit"))
        if amount <= 0 or not body or unit_ms is None:
            return None
        fire_at_ms = int(now.timestamp() * 1000) + amount * unit_ms
        try:
            datetime.fromtimestamp(fire_at_ms / 1000)
        except (OverflowError, OSError, ValueError):
            return None
        return ParsedReminder(fire_at_ms=fire_at_ms, body=body)

    match = _TOMORROW_RE.match(normalized)
    if match:
        hour = int(match.group("hour"))
        minute = int(match.group("minute"))
        body = match.group("body").strip()
        if hour > 23 or minute > 59 or not body:
            return None
        fire_at = (now + timedelta(days=1)).replace(
            hour=hour, minute=minute, second=0, microsecond=0
        )
        return ParsedReminder(fire_at_ms=int(fire_at.timestamp() * 1000), body=body)

    return None


def format_timestamp_local(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y-%m-%d %H:%M")


def _resolve_unit(token: str) -> Optional[int]:
    token = token.lower()
    for roots, unit in _UNIT_ROOTS:
        if token.startswith(roots):
            return unit
    return None
