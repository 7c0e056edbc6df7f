import asyncio
import time
from contextlib import asynccontextmanager
from typing import Dict

from config.env import ORDER_LOCK_TTL_SECONDS


class _Entry:
    __slots__ = ("lock", "last_used", "holders")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.last_used = time.monotonic()
        self.holders = 0


class OrderLockRegistry:
    """
    One asyncio.Lock per order id, serializing guard check + mutation
    for the same order inside this process.

    Idle entries expire after ttl_seconds and are swept lazily on acquire,
    so the registry does not grow with every order ever touched.
    """

    def __init__(self, ttl_seconds: int = ORDER_LOCK_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds
        self._entries: Dict[str, _Entry] = {}

    def __len__(self):
        return len(self._entries)

    def _evict_idle(self, now: float):
        cutoff = now - self.ttl_seconds
        stale = [
            key for key, entry in self._entries.items()
            if entry.holders == 0 and entry.last_used < cutoff
        ]
        for key in stale:
            del self._entries[key]

    @asynccontextmanager
    async def hold(self, order_id):
        key = str(order_id)
        now = time.monotonic()
        self._evict_idle(now)

        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry()
            self._entries[key] = entry

        # counted before awaiting so a waiting entry is never evicted
        entry.holders += 1
        try:
            async with entry.lock:
                entry.last_used = time.monotonic()
                yield
        finally:
            entry.holders -= 1
            entry.last_used = time.monotonic()
