"""Per-key asyncio locks serializing read-decide-write sequences."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class KeyedLocks:
    """One lazily created ``asyncio.Lock`` per key.

    Thread-safety: safe under asyncio's single-threaded cooperative model.
    Lock creation has no await point, so two coroutines asking for the same
    key always share one lock. Locks are not reentrant.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        async with self.get(key):
            yield


class SyncLocks:
    """Lock families shared by the watcher, the poller and the resolver.

    Lock order is destination first, repository second. Never acquire a
    destination lock while holding a repository lock.
    """

    def __init__(self) -> None:
        self.destinations = KeyedLocks()
        self.repositories = KeyedLocks()
