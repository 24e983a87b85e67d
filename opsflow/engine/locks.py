from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class EntityLocks:
    """
    Single-writer discipline per entity.

    Every transition-mutating call for one entity (advance, revert, skip,
    sync, terminal confirmation, timer firing) runs inside hold(entity_id),
    so two triggers can never both act on the same current_stage_id.
    Different entities never wait on each other.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, entity_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(entity_id)
        if lock is None:
            lock = self._locks[entity_id] = asyncio.Lock()
        self._holders[entity_id] = self._holders.get(entity_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._holders[entity_id] - 1
            if remaining:
                self._holders[entity_id] = remaining
            else:
                # nobody holds or waits: drop the lock so the registry stays small
                del self._holders[entity_id]
                del self._locks[entity_id]

    def locked(self, entity_id: str) -> bool:
        lock = self._locks.get(entity_id)
        return bool(lock and lock.locked())
