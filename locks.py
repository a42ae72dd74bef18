# locks.py
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Hashable

logger = logging.getLogger(__name__)


class KeyedLocks:
    """One asyncio.Lock per key, dropped again once nobody holds or waits for it."""

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._waiters: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self):
        return len(self._locks)


# Order completion / cancellation
order_locks = KeyedLocks()

_admin_locks = KeyedLocks()


def admin_lock():
    """Serializes day open/close and shift start/end."""
    return _admin_locks.hold("admin")
