"""
Per-instance serialization.

Every mutator of a workflow instance runs while holding that instance's
lock; distinct instances never share a lock and proceed in parallel.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator


class InstanceLockRegistry:
    """
    Hands out one asyncio.Lock per instance id.

    Locks are reference counted and dropped once no caller holds or waits
    on them, so the registry does not grow with the number of instances.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, instance_id: str) -> AsyncGenerator[None, None]:
        """
        Serialize a critical section on one instance.

        Usage:
            async with locks.hold(instance_id):
                ...  # load, mutate, save
        """
        lock = self._locks.get(instance_id)
        if lock is None:
            lock = self._locks[instance_id] = asyncio.Lock()
        self._waiters[instance_id] = self._waiters.get(instance_id, 0) + 1

        try:
            async with lock:
                yield
        finally:
            self._waiters[instance_id] -= 1
            if self._waiters[instance_id] == 0:
                del self._waiters[instance_id]
                del self._locks[instance_id]

    def is_locked(self, instance_id: str) -> bool:
        lock = self._locks.get(instance_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
