"""Per-repository mutual exclusion."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import OrderedDict
from typing import AsyncIterator

logger = logging.getLogger(__name__)


class RepoLockRegistry:
    """One ``asyncio.Lock`` per repository identity, created on first use.

    ``asyncio.Lock`` wakes waiters in FIFO order, so runs against the same
    repository are serialised in submission order. Entries that are neither
    held nor awaited are evicted once more than ``max_idle`` of them pile up;
    an entry is pinned for the whole time a :meth:`hold` is waiting or holding.
    """

    def __init__(self, max_idle: int = 256) -> None:
        self._max_idle = max_idle
        self._locks: OrderedDict[str, asyncio.Lock] = OrderedDict()
        self._users: dict[str, int] = {}

    def get(self, repo: str) -> asyncio.Lock:
        lock = self._locks.get(repo)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[repo] = lock
        else:
            self._locks.move_to_end(repo)
        return lock

    @contextlib.asynccontextmanager
    async def hold(self, repo: str) -> AsyncIterator[asyncio.Lock]:
        """Acquire the repository's lock for the duration of the block."""
        lock = self.get(repo)
        self._users[repo] = self._users.get(repo, 0) + 1
        try:
            async with lock:
                yield lock
        finally:
            remaining = self._users[repo] - 1
            if remaining:
                self._users[repo] = remaining
            else:
                del self._users[repo]
            self._evict_idle()

    def is_idle(self, repo: str) -> bool:
        lock = self._locks.get(repo)
        return lock is not None and not lock.locked() and repo not in self._users

    def _evict_idle(self) -> None:
        idle = [name for name in self._locks if self.is_idle(name)]
        excess = len(idle) - self._max_idle
        # OrderedDict iteration is least-recently-used first.
        for name in idle[:max(excess, 0)]:
            del self._locks[name]
            logger.debug("Evicted idle repo lock %s", name)

    def __len__(self) -> int:
        return len(self._locks)

    def __contains__(self, repo: object) -> bool:
        return repo in self._locks
