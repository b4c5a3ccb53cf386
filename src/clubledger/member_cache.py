"""TTL cache for member lookups.

The cache is an explicit component handed to :class:`~clubledger.members.MemberDirectory`
rather than a module global, so tests and workers each own their own.

Eviction contract, applied whenever an insert pushes the size past
``max_size``:

1. Drop expired entries, at most ``max_size // 4`` of them.
2. If still over, drop the ``max_size // 4`` oldest-inserted entries.

Entries are keyed by lowercased email (primary and linked) and by member
id, all pointing at the same record.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    value: Dict[str, Any]
    expires_at: float


class MemberCache:
    """Thread-safe TTL cache with bounded size.

    :param ttl_seconds: Lifetime of each entry (default 5 minutes).
    :param max_size: Entry count above which eviction runs.
    :param clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_size: int = 1000,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_size = max_size
        self._clock = clock
        self._entries: "OrderedDict[str, _Entry]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @staticmethod
    def _email_key(email: str) -> str:
        return "email:" + email.strip().lower()

    @staticmethod
    def _id_key(member_id: str) -> str:
        return "id:" + str(member_id)

    def _get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                self._misses += 1
                return None
            self._hits += 1
            return entry.value

    def get_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return self._get(self._email_key(email))

    def get_by_id(self, member_id: str) -> Optional[Dict[str, Any]]:
        return self._get(self._id_key(member_id))

    def set(self, member: Dict[str, Any]) -> None:
        """Cache *member* under its id, email, and any linked emails."""
        keys = [self._id_key(member["id"]), self._email_key(member["email"])]
        keys.extend(self._email_key(e) for e in member.get("linked_emails") or [])
        entry = _Entry(value=member, expires_at=self._clock() + self._ttl)
        with self._lock:
            for key in keys:
                # Re-inserting moves the key to the newest position.
                self._entries.pop(key, None)
                self._entries[key] = entry
            if len(self._entries) > self._max_size:
                self._evict()

    def _evict(self) -> None:
        """Apply the two-stage eviction policy.  Caller holds the lock."""
        batch = max(1, self._max_size // 4)
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.expires_at <= now][:batch]
        for key in expired:
            del self._entries[key]
        removed = len(expired)

        if len(self._entries) > self._max_size:
            for _ in range(min(batch, len(self._entries))):
                self._entries.popitem(last=False)
                removed += 1

        self._evictions += removed
        logger.debug("Member cache evicted %d entries (size now %d)", removed, len(self._entries))

    def invalidate(self, email_or_id: str) -> int:
        """Drop every key that points at the member identified by *email_or_id*.

        Returns the number of keys removed.
        """
        with self._lock:
            entry = self._entries.get(self._email_key(email_or_id)) or self._entries.get(
                self._id_key(email_or_id)
            )
            if entry is None:
                return 0
            doomed = [k for k, e in self._entries.items() if e is entry]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._entries),
                "max_size": self._max_size,
                "ttl_seconds": self._ttl,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
            }
