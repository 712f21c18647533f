"""Per-device lock map.

One ``asyncio.Lock`` per device id, created on first use.  Unrelated
devices never contend for the same lock.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from src.wearables.errors import LockContention

logger = logging.getLogger("nutrisync.wearables.sync.locks")


class KeyedLocks:
    """Lazily created asyncio locks keyed by an arbitrary string."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Wait for and hold the lock for ``key``."""
        async with self.get(key):
            yield

    @asynccontextmanager
    async def try_hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key`` without waiting.

        Raises:
            LockContention: If the lock is already held.
        """
        lock = self.get(key)
        if lock.locked():
            raise LockContention(f"lock for {key} is already held")
        # No await between the check and acquire, so no other task can slip in.
        await lock.acquire()
        try:
            yield
        finally:
            lock.release()

    def __len__(self) -> int:
        return len(self._locks)
