"""
Per-object pass locks.

Change handlers and the periodic timer may fire for the same Database at
the same time. A pass must run to completion before the next one starts,
so every pass for an object holds that object's lock. Passes for different
objects do not block each other.

Usage:
    >>> lock_mgr = LockManager()
    >>> async with lock_mgr.hold("uid-123"):
    ...     await reconcile()
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

import structlog

logger = structlog.get_logger(__name__)


class LockManager:
    """In-process lock registry keyed by resource uid."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def _get_lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        lock = self._get_lock(key)
        if lock.locked():
            logger.debug("pass_waiting_for_lock", key=key)
        async with lock:
            yield

    def forget(self, key: str) -> None:
        """Drop the lock of a removed object."""
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]


# Global instance
lock_manager = LockManager()
