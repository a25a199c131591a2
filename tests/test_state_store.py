import json
from unittest.mock import AsyncMock

import pytest

from resumable_upload.models import MultipartState, Part
from resumable_upload.services import InMemoryStateStore, RedisStateStore


@pytest.fixture
def redis_client():
    client = AsyncMock()
    client.get.return_value = None
    return client


class TestInMemoryStateStore:
    async def test_get_creates_and_remove_forgets(self):
        store = InMemoryStateStore()

        state = store.get("f1")
        state.upload_id = "u1"

        assert (await store.load("f1")).upload_id == "u1"
        await store.reset("f1")
        assert store.peek("f1").upload_id is None
        await store.remove("f1")
        assert store.peek("f1") is None


class TestRedisStateStore:
    async def test_save_writes_with_ttl(self, redis_client):
        store = RedisStateStore(redis_client)
        state = store.get("f1")
        state.upload_id = "u1"
        state.key = "uploads/a.bin"
        state.uploaded_parts.append(Part(part_number=1, size=5, etag='"e1"'))

        await store.save("f1")

        key, ttl, payload = redis_client.setex.await_args.args
        assert key == "multipart_state:f1"
        assert ttl == 604800
        assert json.loads(payload)["upload_id"] == "u1"

    async def test_save_without_state_is_a_no_op(self, redis_client):
        await RedisStateStore(redis_client).save("unknown")

        redis_client.setex.assert_not_awaited()

    async def test_load_restores_from_redis(self, redis_client):
        stored = MultipartState(
            upload_id="u9",
            key="uploads/a.bin",
            is_multipart=True,
            uploaded_parts=[Part(part_number=2, size=5, etag='"e2"')],
        )
        redis_client.get.return_value = stored.model_dump_json()
        store = RedisStateStore(redis_client)

        state = await store.load("f1")

        redis_client.get.assert_awaited_once_with("multipart_state:f1")
        assert state is store.peek("f1")
        assert state.upload_id == "u9"
        assert [p.part_number for p in state.uploaded_parts] == [2]

    async def test_load_prefers_live_state(self, redis_client):
        store = RedisStateStore(redis_client)
        store.get("f1").upload_id = "live"

        assert (await store.load("f1")).upload_id == "live"
        redis_client.get.assert_not_awaited()

    async def test_load_missing_entry_returns_empty_state(self, redis_client):
        state = await RedisStateStore(redis_client).load("f1")

        assert state.upload_id is None

    async def test_reset_and_remove_delete_the_key(self, redis_client):
        store = RedisStateStore(redis_client, prefix="state")
        store.get("f1").upload_id = "u1"

        await store.reset("f1")
        await store.remove("f1")

        assert redis_client.delete.await_count == 2
        redis_client.delete.assert_awaited_with("state:f1")
        assert store.peek("f1") is None
