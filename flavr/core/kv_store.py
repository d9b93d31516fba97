"""
Time-bounded key-value store.

Short-lived coordination state (sync-run locks and similar) lives behind the
TTLStore interface so it is shared across instances and expires on its own.
RedisTTLStore is the deployed implementation; InMemoryTTLStore serves
single-process development and tests.
"""
from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

from redis import Redis

from flavr.core.config import settings

# Atomic compare-and-delete: only the current holder's token releases a lock
_COMPARE_AND_DELETE = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


class TTLStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str, ttl_seconds: int, *, only_if_absent: bool = False) -> bool:
        """Store value with expiry. Returns False when only_if_absent and the key exists."""
        ...

    def delete(self, key: str) -> None:
        ...

    def delete_if_equals(self, key: str, value: str) -> bool:
        """Delete key only while it still holds value (releasing a lock we own)."""
        ...


class RedisTTLStore:
    def __init__(self, client: Optional[Redis] = None, url: Optional[str] = None, prefix: str = "flavr:"):
        self.client = client or Redis.from_url(url or settings.REDIS_URL, decode_responses=True)
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key: str) -> Optional[str]:
        value = self.client.get(self._key(key))
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def set(self, key: str, value: str, ttl_seconds: int, *, only_if_absent: bool = False) -> bool:
        result = self.client.set(self._key(key), value, ex=max(1, int(ttl_seconds)), nx=only_if_absent)
        return bool(result)

    def delete(self, key: str) -> None:
        self.client.delete(self._key(key))

    def delete_if_equals(self, key: str, value: str) -> bool:
        return bool(self.client.eval(_COMPARE_AND_DELETE, 1, self._key(key), value))


class InMemoryTTLStore:
    """Process-local TTLStore; entries expire lazily on access."""

    def __init__(self, time_fn: Callable[[], float] = time.monotonic):
        self.time_fn = time_fn
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self.time_fn() >= expires_at:
            del self._entries[key]
            return None
        return value

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    def set(self, key: str, value: str, ttl_seconds: int, *, only_if_absent: bool = False) -> bool:
        with self._lock:
            if only_if_absent and self._live(key) is not None:
                return False
            self._entries[key] = (value, self.time_fn() + max(1, int(ttl_seconds)))
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def delete_if_equals(self, key: str, value: str) -> bool:
        with self._lock:
            if self._live(key) != value:
                return False
            del self._entries[key]
            return True
