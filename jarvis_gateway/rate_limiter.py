"""
Per-user message throttle.

Drops a text message that arrives sooner than ``min_interval_ms`` after the
previous accepted message from the same user. A zero interval disables the
throttle entirely.
"""

import threading
import time
from typing import Callable, Dict, Optional


class UserRateLimiter:
    """
    In-memory minimum-interval limiter keyed by user id.
    """

    def __init__(
        self,
        min_interval_ms: int = 0,
        now_fn: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize the rate limiter.

        Args:
            min_interval_ms: Minimum gap between accepted messages, 0 disables
            now_fn: Monotonic clock in seconds, overridable in tests
        """
        self.min_interval_ms = max(0, int(min_interval_ms))
        self.now_fn = now_fn or time.monotonic
        self._last_accepted: Dict[str, float] = {}
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.min_interval_ms > 0

    def allow(self, user_id: str) -> bool:
        """
        Check whether a message from ``user_id`` may be processed now.

        Returns:
            True if accepted (and recorded), False if throttled
        """
        if not self.enabled:
            return True
        key = str(user_id)
        now = self.now_fn()
        with self._lock:
            last = self._last_accepted.get(key)
            if last is not None and (now - last) * 1000 < self.min_interval_ms:
                return False
            self._last_accepted[key] = now
            return True

    def reset(self, user_id: Optional[str] = None) -> None:
        with self._lock:
            if user_id is None:
                self._last_accepted.clear()
            else:
                self._last_accepted.pop(str(user_id), None)
