"""Per-instance mutual exclusion.

Two flavours share one shape: a lock object per key, created on first
use and dropped when its last holder or waiter leaves.

* ``KeyedLock`` — threading locks for synchronous writers (manifest create).
* ``AsyncKeyedLock`` — asyncio leases for reconcile; a lease is always
  released on exit, including cancellation and exceptions.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager


class KeyedLock:
    """A ``threading.Lock`` per key."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._users: dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]


class AsyncKeyedLock:
    """An ``asyncio.Lock`` per key, handed out as a lease."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def lease(self, key: str, timeout: float | None = None) -> AsyncIterator[None]:
        """Hold the lease for *key*.

        Raises
        ------
        asyncio.TimeoutError
            If *timeout* elapses before the lease is granted.
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            if timeout is None:
                await lock.acquire()
            else:
                await asyncio.wait_for(lock.acquire(), timeout)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]
