"""
Bounded recently-seen key set used to suppress duplicate transitions.
"""

import logging
import threading
from collections import OrderedDict
from datetime import datetime, timezone, timedelta
from typing import Hashable, Optional

logger = logging.getLogger(__name__)


class RecentlySeen:
    """
    Insertion-ordered set with a size bound and an optional TTL.

    One instance is owned by a MonitorManager and shared by reference with
    the components that need it.
    """

    def __init__(self, max_size: int = 10000, ttl_seconds: Optional[float] = None):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._entries: "OrderedDict[Hashable, datetime]" = OrderedDict()
        self._lock = threading.Lock()
        self.duplicates_suppressed = 0

    def _is_expired(self, seen_at: datetime, now: datetime) -> bool:
        return self.ttl_seconds is not None and now - seen_at > timedelta(seconds=self.ttl_seconds)

    def check_and_add(self, key: Hashable) -> bool:
        """Record ``key``; return False if it was already recently seen."""
        now = datetime.now(timezone.utc)
        with self._lock:
            seen_at = self._entries.get(key)
            if seen_at is not None and not self._is_expired(seen_at, now):
                self.duplicates_suppressed += 1
                return False

            self._entries[key] = now
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
            return True

    def discard(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __contains__(self, key: Hashable) -> bool:
        now = datetime.now(timezone.utc)
        with self._lock:
            seen_at = self._entries.get(key)
            return seen_at is not None and not self._is_expired(seen_at, now)

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
