"""Per-entity serialization of state transitions."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class EntityLocks:
    """Hands out one ``asyncio.Lock`` per entity id.

    Transitions on the same entity queue behind each other while unrelated
    entities proceed in parallel. Locks are dropped once nobody holds or
    waits on them.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, entity_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(entity_id, asyncio.Lock())
        self._users[entity_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[entity_id] -= 1
            if self._users[entity_id] == 0:
                del self._users[entity_id]
                self._locks.pop(entity_id, None)

    def __len__(self) -> int:
        return len(self._locks)
