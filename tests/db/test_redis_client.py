from datetime import datetime
from zoneinfo import ZoneInfo

import pytest
import redis.asyncio as redis
from unittest.mock import AsyncMock

from gate_attendance.backend.db.redis_client import LAST_TAG_KEY, RedisClient
from gate_attendance.backend.models.redis_models import LastScannedTag


@pytest.fixture
def redis_client():
    # The pool is never used: the Redis connection is replaced by a mock.
    client = RedisClient(pool=redis.ConnectionPool.from_url("redis://localhost:6379/0"))
    client._redis = AsyncMock()
    return client


@pytest.fixture
def entry():
    return LastScannedTag(rfid_tag="04A1B2C3", device_id="gate-1",
                          detected_at=datetime(2024, 3, 4, 7, 15, tzinfo=ZoneInfo("Asia/Jakarta")))


@pytest.mark.asyncio
class TestLastTagSlot:

    async def test_put_sets_single_key_with_ttl(self, redis_client, entry):
        await redis_client.put_last_tag(entry, ttl=300)

        redis_client._redis.set.assert_awaited_once_with(LAST_TAG_KEY, entry.model_dump_json(), ex=300)

    async def test_get_without_clear(self, redis_client, entry):
        redis_client._redis.get.return_value = entry.model_dump_json()

        assert await redis_client.get_last_tag() == entry
        redis_client._redis.getdel.assert_not_awaited()

    async def test_get_with_clear_uses_getdel(self, redis_client, entry):
        redis_client._redis.getdel.return_value = entry.model_dump_json()

        assert await redis_client.get_last_tag(clear=True) == entry
        redis_client._redis.getdel.assert_awaited_once_with(LAST_TAG_KEY)

    async def test_empty_slot(self, redis_client):
        redis_client._redis.get.return_value = None
        assert await redis_client.get_last_tag() is None
