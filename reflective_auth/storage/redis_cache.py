from __future__ import annotations

import asyncio
import contextlib
import hashlib
import time
from typing import Any, AsyncIterator, Dict, Mapping, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from reflective_auth.logging import get_logger, sanitize_error_message
from reflective_auth.storage.errors import StoreError

logger = get_logger(__name__)


class RedisChallengeStore:
    """Challenge store shared across instances, backed by Redis hashes.

    Each record is a hash at its key with a TTL. The client is built once
    with explicit connect/command timeouts; :meth:`connect` verifies the
    server is reachable and :meth:`close` releases the pool.
    """

    DEFAULT_OPERATION_TIMEOUT = 2.0

    # Increment a field only when the record exists; keeps the key's TTL
    _INCREMENT_IF_EXISTS_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return false
end
return redis.call('HINCRBY', KEYS[1], ARGV[1], ARGV[2])
"""

    # Atomic token bucket: refill + consume in one step
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < 1 then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  redis.call('EXPIRE', key, math.max(math.ceil((1 - tokens) / refill_rate), 1))
  return 0
end

tokens = tokens - 1
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', key, math.max(math.ceil(capacity / refill_rate), 1))
return 1
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[aioredis.Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment = self.client.register_script(self._INCREMENT_IF_EXISTS_SCRIPT)
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    @contextlib.asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        """Surface timeouts and connection errors as StoreError, without retrying."""
        try:
            yield
        except (RedisError, asyncio.TimeoutError, OSError) as exc:
            logger.error(
                "redis_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise StoreError(
                "challenge store unavailable", backend="redis", operation=operation
            ) from exc

    async def connect(self) -> None:
        async with self._guard("connect"):
            await self.client.ping()
        logger.info("redis_challenge_store_connected")

    async def ping(self) -> None:
        async with self._guard("ping"):
            await self.client.ping()

    async def close(self) -> None:
        """Close the connection pool. Call once at shutdown."""
        await self.client.aclose()

    async def set(self, key: str, value: Mapping[str, Any], ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        # Full replace: stale fields from a previous record must not survive
        async with self._guard("set"):
            pipe = self.client.pipeline(transaction=True)
            pipe.delete(key)
            pipe.hset(key, mapping={k: str(v) for k, v in value.items()})
            pipe.expire(key, ttl_seconds)
            await pipe.execute()

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        async with self._guard("get"):
            record = await self.client.hgetall(key)
        return dict(record) if record else None

    async def delete(self, key: str) -> bool:
        async with self._guard("delete"):
            removed = await self.client.delete(key)
        return bool(removed)

    async def increment_field(self, key: str, field: str, amount: int = 1) -> Optional[int]:
        async with self._guard("increment_field"):
            result = await self._increment(keys=[key], args=[field, amount])
        return None if result is None else int(result)

    @staticmethod
    def _rate_key(key: str) -> str:
        # Hash the subject so user input can never collide with challenge keys
        return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        refill_rate = float(limit) / float(window_seconds)
        async with self._guard("check_rate_limit"):
            allowed = await self._token_bucket(
                keys=[self._rate_key(key)],
                args=[time.time(), refill_rate, limit],
            )
        return bool(int(allowed))
