"""Per-account serialization of event processing.

Two events for the same account must not interleave their read-derive-write
sequences.  :class:`AccountLockRegistry` provides one ``asyncio.Lock`` per
account id inside a worker process; cross-process serialization is added by
:func:`~billing_engine.state.database.acquire_account_lock` on PostgreSQL.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class AccountLockRegistry:
    """Lazily-created, reference-counted locks keyed by account id.

    A lock is dropped as soon as no task holds or awaits it, so the registry
    does not grow with the number of accounts ever seen.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    @property
    def active_keys(self) -> frozenset[str]:
        """Account ids currently held or awaited."""
        return frozenset(self._locks)

    @asynccontextmanager
    async def hold(self, account_id: str) -> AsyncIterator[None]:
        """Hold the lock for *account_id* for the duration of the block."""
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        self._refs[account_id] = self._refs.get(account_id, 0) + 1

        if lock.locked():
            logger.debug("Waiting for in-flight event on account %s", account_id)
        try:
            async with lock:
                yield
        finally:
            self._refs[account_id] -= 1
            if self._refs[account_id] == 0:
                del self._refs[account_id]
                del self._locks[account_id]
