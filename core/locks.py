"""
core/locks.py — Per-Key Serialization
======================================
Ownership mutations on the same parcel (and decisions on the same session)
must run one at a time inside this process; work on different keys never
waits. Locks are created on demand and discarded once nobody holds or waits
on them, so the registry does not grow with the number of parcels.

Across processes the database row lock (SELECT ... FOR UPDATE in
modules/store.py) and the unique partial indexes do the same job.

    from core.locks import keyed_locks

    async with keyed_locks.hold(f"parcel:{upin}"):
        ...
"""

import asyncio
from contextlib import asynccontextmanager


class KeyedLocks:

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def _checkout(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        return lock

    def _checkin(self, key: str):
        self._users[key] -= 1
        if self._users[key] == 0:
            del self._users[key]
            del self._locks[key]

    @asynccontextmanager
    async def hold(self, *keys: str):
        """Acquire every key (sorted, de-duplicated) for the duration of the block."""
        ordered = sorted(set(keys))
        acquired = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                try:
                    await lock.acquire()
                except BaseException:
                    self._checkin(key)
                    raise
                acquired.append((key, lock))
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)

    def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())


def parcel_key(upin: str) -> str:
    return f"parcel:{upin}"


def session_key(session_id: str) -> str:
    return f"session:{session_id}"


# Singleton, import this everywhere:  from core.locks import keyed_locks
keyed_locks = KeyedLocks()
