"""
Per-key serialization for read-modify-write sequences.

Balance and earnings updates read the stored total, compute, then write.
Two interleaved updates for the same user would both read the same total
and one write would be lost. KeyedLock gives each user id its own
asyncio.Lock so updates for one user run one at a time while different
users proceed in parallel.

This serializes writers inside one process only. Writers in other processes
still race on the store (last writer wins).
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class KeyedLock:
    """A lazily-populated family of asyncio locks, one per key."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock

        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            # Drop idle locks so the table doesn't grow with every user seen
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
