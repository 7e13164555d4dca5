import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Hashable, List

from ..services.errors import StorageTimeoutError

logger = logging.getLogger(__name__)


class KeyedLock:
    """
    One asyncio.Lock per key, created on demand and dropped once nobody holds or waits for it.

    Used to serialise the read-decide-write sequence for a single (student, day)
    or a single device id inside this process. Holders must not await unrelated
    network calls while inside `hold()`.
    """

    def __init__(self, timeout: float = 5.0):
        self._timeout = timeout
        # key -> [lock, number of holders + waiters]
        self._entries: Dict[Hashable, List] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        entry = self._entries.get(key)
        if entry is None:
            entry = [asyncio.Lock(), 0]
            self._entries[key] = entry
        entry[1] += 1
        lock: asyncio.Lock = entry[0]
        acquired = False

        async def acquire():
            nonlocal acquired
            await lock.acquire()
            acquired = True

        try:
            try:
                await asyncio.wait_for(acquire(), timeout=self._timeout)
            except asyncio.TimeoutError:
                # wait_for can time out after the lock was granted (before 3.12)
                if acquired:
                    lock.release()
                logger.warning(f"Timed out waiting for lock on key {key!r}.")
                raise StorageTimeoutError(f"Timed out waiting for concurrent update of {key!r}.")
            try:
                yield
            finally:
                lock.release()
        finally:
            entry[1] -= 1
            if entry[1] == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)
