import logging
from typing import Optional
import redis.asyncio as redis

from ..models.redis_models import LastScannedTag

logger = logging.getLogger(__name__)

LAST_TAG_KEY = "scan:last_unmatched_tag"


class RedisClient:
    """
    Redis client for short-lived scan state.
    """

    def __init__(self, pool: redis.ConnectionPool):
        self._redis = redis.Redis(connection_pool=pool, decode_responses=True)

    # ===== Last scanned tag (single slot) =====

    async def put_last_tag(self, entry: LastScannedTag, ttl: int):
        """Overwrites the slot; the entry disappears on its own after `ttl` seconds."""
        await self._redis.set(LAST_TAG_KEY, entry.model_dump_json(), ex=ttl)

    async def get_last_tag(self, clear: bool = False) -> Optional[LastScannedTag]:
        """Reads the slot, atomically emptying it when `clear` is set."""
        if clear:
            entry_json = await self._redis.getdel(LAST_TAG_KEY)
        else:
            entry_json = await self._redis.get(LAST_TAG_KEY)
        return LastScannedTag.model_validate_json(entry_json) if entry_json else None
