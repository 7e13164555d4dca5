import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

import asyncpg
import redis.exceptions

from ..services.errors import StorageTimeoutError, StorageUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Driver errors that mean "storage is not reachable right now".
UNAVAILABLE_ERRORS = (
    OSError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
    redis.exceptions.ConnectionError,
)


class StorageGuard:
    """
    Bounds every storage call with a timeout.

    Reads are idempotent and retried once after a short backoff.
    Writes are attempted exactly once; deciding whether to try again is left to
    the caller, which must re-read state first so a transition is never applied twice.
    """

    def __init__(self, timeout: float = 5.0, backoff: float = 0.2, read_retries: int = 1):
        self._timeout = timeout
        self._backoff = backoff
        self._read_retries = read_retries

    async def read(self, operation: Callable[[], Awaitable[T]], description: str = "read") -> T:
        attempt = 0
        while True:
            try:
                return await self._run(operation, description)
            except (StorageTimeoutError, StorageUnavailableError) as e:
                if attempt >= self._read_retries:
                    raise
                attempt += 1
                logger.warning(f"Storage {description} failed ({e}); retrying in {self._backoff}s.")
                await asyncio.sleep(self._backoff)

    async def write(self, operation: Callable[[], Awaitable[T]], description: str = "write") -> T:
        return await self._run(operation, description)

    async def _run(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        try:
            return await asyncio.wait_for(operation(), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"Storage {description} timed out after {self._timeout}s.")
            raise StorageTimeoutError(f"Storage {description} timed out.") from e
        except UNAVAILABLE_ERRORS as e:
            logger.error(f"Storage {description} failed: storage unavailable.", exc_info=True)
            raise StorageUnavailableError(f"Storage is unavailable ({description}).") from e
