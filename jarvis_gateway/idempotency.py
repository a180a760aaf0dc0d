"""Duplicate suppression for inbound webhook updates.

Telegram re-delivers an update when it does not get a timely 200, so the
same event can reach the gateway several times. The deduplicator remembers
the most recent event keys in a bounded FIFO window; only the first delivery
of a key is processed.

The window lives in process memory. After a restart a re-delivered update
is processed again, which is acceptable because notes still go through an
explicit Save confirmation.
"""

import hashlib
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 700
BUCKET_SECONDS = 300


class DeliveryDeduplicator:
    """Bounded set of recently seen event keys with FIFO eviction."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._lock = threading.Lock()

    def seen(self, event_id: Any) -> bool:
        """Record ``event_id`` and report whether it was already in the window.

        Returns:
            True for a duplicate, False the first time a key is observed
        """
        key = str(event_id)
        with self._lock:
            if key in self._seen:
                return True
            self._seen[key] = None
            while len(self._seen) > self.capacity:
                self._seen.popitem(last=False)
        return False

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)

    def __contains__(self, event_id: Any) -> bool:
        with self._lock:
            return str(event_id) in self._seen


def make_dedupe_key(
    update_id: Optional[int],
    chat_id: Any = None,
    text: str = "",
    timestamp: Optional[int] = None,
) -> str:
    """Generate a stable deduplication key for an update.

    Priority:
    1. If the platform supplied an update id, use it
    2. Otherwise, hash chat id + text + 5-minute timestamp bucket
    """
    if update_id is not None:
        return f"tg_update_{update_id}"

    timestamp = timestamp or int(time.time())
    bucket = timestamp // BUCKET_SECONDS
    content = f"{chat_id}:{bucket}:{text}"
    hash_val = hashlib.sha256(content.encode()).hexdigest()[:16]
    return f"tg_hash_{hash_val}"
