"""
Per-conversation turn serialization within one process.

Two messages from the same user may arrive concurrently (webhook retries,
double taps). Each turn reads and writes the same session row, so turns for
one (tenant, user channel, channel type) key run one at a time. Locks are
dropped once no turn holds a reference to them.
"""
import asyncio
import weakref
from typing import Hashable


class SessionLockRegistry:

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[Hashable, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def lock_for(self, *key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


session_locks = SessionLockRegistry()
