"""Unit tests for the Redis challenge store using a mocked client."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from reflective_auth.storage.errors import StoreError
from reflective_auth.storage.redis_cache import RedisChallengeStore


@pytest.fixture
def client():
    client = MagicMock()
    client.ping = AsyncMock(return_value=True)
    client.hgetall = AsyncMock(return_value={})
    client.delete = AsyncMock(return_value=1)
    client.aclose = AsyncMock()
    client.increment = AsyncMock(return_value=1)
    client.bucket = AsyncMock(return_value=1)
    client.register_script.side_effect = [client.increment, client.bucket]
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[0, 1, True])
    client.pipeline.return_value = pipe
    return client


@pytest.fixture
def store(client):
    return RedisChallengeStore("redis://localhost:6379/0", client=client)


class TestCommands:
    async def test_set_replaces_record_in_one_transaction(self, store, client):
        await store.set("2fa:a@example.com", {"code": "012345", "failed_attempts": 0}, 600)

        client.pipeline.assert_called_once_with(transaction=True)
        pipe = client.pipeline.return_value
        pipe.delete.assert_called_once_with("2fa:a@example.com")
        pipe.hset.assert_called_once_with(
            "2fa:a@example.com", mapping={"code": "012345", "failed_attempts": "0"}
        )
        pipe.expire.assert_called_once_with("2fa:a@example.com", 600)
        pipe.execute.assert_awaited_once()

    async def test_get_maps_empty_hash_to_none(self, store, client):
        assert await store.get("missing") is None

        client.hgetall.return_value = {"code": "012345"}
        assert await store.get("present") == {"code": "012345"}

    async def test_delete_reports_removal(self, store, client):
        assert await store.delete("k") is True
        client.delete.return_value = 0
        assert await store.delete("k") is False

    async def test_increment_uses_script_and_maps_nil(self, store, client):
        client.increment.return_value = 2
        assert await store.increment_field("k", "failed_attempts") == 2
        client.increment.assert_awaited_with(keys=["k"], args=["failed_attempts", 1])

        client.increment.return_value = None
        assert await store.increment_field("k", "failed_attempts") is None

    async def test_rate_limit_key_is_hashed(self, store, client):
        client.bucket.return_value = 0

        assert await store.check_rate_limit("login:a@example.com", 10, 60) is False
        keys = client.bucket.await_args.kwargs["keys"]
        assert keys[0].startswith("rate:")
        assert "a@example.com" not in keys[0]


class TestFailureMapping:
    @pytest.mark.parametrize(
        "error",
        [RedisConnectionError("refused"), RedisTimeoutError("timeout"), asyncio.TimeoutError()],
    )
    async def test_errors_become_store_error(self, store, client, error):
        client.hgetall.side_effect = error

        with pytest.raises(StoreError) as exc_info:
            await store.get("k")

        assert exc_info.value.backend == "redis"
        assert exc_info.value.operation == "get"

    async def test_connect_failure_is_store_error(self, store, client):
        client.ping.side_effect = RedisConnectionError("Error 111 connecting to redis:6379")

        with pytest.raises(StoreError):
            await store.connect()

    async def test_close_releases_client(self, store, client):
        await store.close()

        client.aclose.assert_awaited_once()
