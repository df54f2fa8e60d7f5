"""Per-identity single-flight guards.

Reconciliations for one identity read-modify-write the same server set, so
they must never overlap. The store side runs in request threads and uses
``KeyedLock``; the client side runs on asyncio and uses ``AsyncKeyedLock``.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, contextmanager
import threading
from typing import AsyncIterator, Iterator


class KeyedLock:
    """One ``threading.Lock`` per key, created on first use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._lock_for(key)
        with lock:
            yield


class AsyncKeyedLock:
    """One ``asyncio.Lock`` per key, created on first use."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            yield
