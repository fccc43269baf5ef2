"""Per-key critical sections for single-writer access.

Each key (normally a subscription id) gets its own :class:`asyncio.Lock`,
created on first use and dropped once nobody holds or waits on it, so
unrelated keys never contend.

A section is re-entrant for the task that holds it: a component that
already owns a subscription's section can call another component that
enters the same section without deadlocking.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog

logger = structlog.get_logger(__name__)


class _Entry:
    __slots__ = ("lock", "owner", "depth", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.owner: asyncio.Task[object] | None = None
        self.depth = 0
        self.users = 0


class KeyedLock:
    """A registry of task-reentrant locks keyed by string."""

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Enter the critical section for *key*."""
        task = asyncio.current_task()
        entry = self._entries.get(key)
        if entry is not None and task is not None and entry.owner is task:
            entry.depth += 1
            try:
                yield
            finally:
                entry.depth -= 1
            return

        if entry is None:
            entry = _Entry()
            self._entries[key] = entry
        entry.users += 1
        try:
            if entry.lock.locked():
                logger.debug("keyed_lock_wait", key=key)
            async with entry.lock:
                entry.owner = task
                entry.depth = 1
                try:
                    yield
                finally:
                    entry.owner = None
                    entry.depth = 0
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._entries[key]

    def locked(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    @property
    def size(self) -> int:
        """Number of keys currently held or waited on."""
        return len(self._entries)
