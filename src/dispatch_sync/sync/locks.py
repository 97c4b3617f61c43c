"""Per-record locks shared by upload acknowledgment and realtime apply."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class KeyedLock:
    """
    One :class:`asyncio.Lock` per ``(table, id)``, created on demand.

    Writes to the same record are serialized; writes to different records
    proceed concurrently. Entries are dropped once nobody holds or awaits
    them.
    """

    def __init__(self) -> None:
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._users: dict[tuple[str, str], int] = {}

    @asynccontextmanager
    async def hold(self, table: str, record_id: str) -> AsyncIterator[None]:
        key = (table, record_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def is_held(self, table: str, record_id: str) -> bool:
        lock = self._locks.get((table, record_id))
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
