"""Redis-backed counter store.

Uses ``redis.asyncio`` with a bounded socket timeout. The sliding window step
runs as a Lua script so purge, count and insert happen in one round trip and
concurrent requests arriving in the same millisecond cannot both take the
last slot.

Any Redis or socket failure is re-raised as ``StoreUnavailableError``.
"""

from __future__ import annotations

import logging
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError

from gatekeeper.adapters.counter_store.base import AbstractCounterStore, WindowSnapshot
from gatekeeper.core.config import RedisSettings
from gatekeeper.core.errors import StoreUnavailableError

logger = logging.getLogger(__name__)


# KEYS[1] window key
# ARGV: now_ms, window_start_ms, limit, member, ttl_ms
# Returns {admitted (0/1), count before insert, oldest score or -1}
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window_start = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])

redis.call('ZREMRANGEBYSCORE', key, '-inf', '(' .. window_start)
local count = redis.call('ZCOUNT', key, window_start, now)
local oldest = -1
local first = redis.call('ZRANGEBYSCORE', key, window_start, now, 'WITHSCORES', 'LIMIT', 0, 1)
if first[2] then
  oldest = tonumber(first[2])
end

if count >= limit then
  return {0, count, oldest}
end

redis.call('ZADD', key, now, ARGV[4])
redis.call('PEXPIRE', key, tonumber(ARGV[5]))
if oldest < 0 then
  oldest = now
end
return {1, count, oldest}
"""


class RedisCounterStore(AbstractCounterStore):
    """Counter store on a shared Redis instance."""

    def __init__(self, client: redis.Redis) -> None:
        self._client = client
        self._window_script = client.register_script(SLIDING_WINDOW_SCRIPT)

    @classmethod
    def from_settings(cls, redis_settings: RedisSettings) -> "RedisCounterStore":
        """Build a store with timeouts taken from configuration."""

        client = redis.from_url(
            redis_settings.url,
            decode_responses=True,
            socket_timeout=redis_settings.socket_timeout_seconds,
            socket_connect_timeout=redis_settings.socket_timeout_seconds,
        )
        return cls(client)

    async def _call(self, operation: str, awaitable: Any) -> Any:
        try:
            return await awaitable
        except (RedisError, OSError, TimeoutError) as exc:
            raise StoreUnavailableError(
                code="counter_store_unavailable",
                message=f"Redis {operation} failed: {exc}",
                details={"store": "redis", "operation": operation},
            ) from exc

    async def add(self, key: str, score: int, member: str) -> None:
        await self._call("zadd", self._client.zadd(key, {member: score}))

    async def range_by_score(self, key: str, min_score: int, max_score: int) -> list[int]:
        rows = await self._call(
            "zrangebyscore",
            self._client.zrangebyscore(key, min_score, max_score, withscores=True),
        )
        return [int(score) for _, score in rows]

    async def remove_range_by_score(self, key: str, min_score: int, max_score: int) -> int:
        return int(
            await self._call(
                "zremrangebyscore", self._client.zremrangebyscore(key, min_score, max_score)
            )
        )

    async def expire(self, key: str, ttl_ms: int) -> None:
        await self._call("pexpire", self._client.pexpire(key, ttl_ms))

    async def set_with_expiry(self, key: str, value: str, ttl_ms: int) -> None:
        await self._call("set", self._client.set(key, value, px=ttl_ms))

    async def get(self, key: str) -> str | None:
        return await self._call("get", self._client.get(key))

    async def delete(self, key: str) -> bool:
        return bool(await self._call("delete", self._client.delete(key)))

    async def consume_window(
        self,
        key: str,
        *,
        now_ms: int,
        window_ms: int,
        limit: int,
        member: str,
    ) -> WindowSnapshot:
        admitted, count, oldest = await self._call(
            "sliding_window",
            self._window_script(
                keys=[key],
                args=[now_ms, now_ms - window_ms, limit, member, window_ms],
            ),
        )
        return WindowSnapshot(
            admitted=bool(int(admitted)),
            count=int(count),
            oldest_ms=int(oldest) if int(oldest) >= 0 else None,
        )

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except (RedisError, OSError, TimeoutError) as exc:
            logger.warning(
                "counter_store.ping_failed",
                extra={"store": "redis", "error_type": type(exc).__name__},
            )
            return False

    async def close(self) -> None:
        await self._client.aclose()
