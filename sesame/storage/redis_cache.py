from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError, ResponseError

from sesame.storage.errors import StorageError

_GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""


class RedisChallengeStore:
    """Ceremony and OAuth state with Redis key expiry.

    Expiry is enforced by Redis itself, so an expired entry is indistinguishable
    from one that was never stored.
    """

    KEY_PREFIX = "sesame:challenge:"

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def store(self, key: str, state: str, ttl_seconds: int) -> None:
        try:
            await self.client.set(self._key(key), state, ex=max(1, int(ttl_seconds)))
        except RedisError as exc:
            raise StorageError("challenge store write failed") from exc

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(self._key(key))
        except RedisError as exc:
            raise StorageError("challenge store read failed") from exc

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(self._key(key))
        except RedisError as exc:
            raise StorageError("challenge store delete failed") from exc

    async def take(self, key: str) -> Optional[str]:
        """Atomically get and delete a challenge.

        Uses GETDEL (Redis 6.2+) with a Lua fallback for older servers, so two
        concurrent finishes of the same ceremony cannot both see the state.
        """
        full_key = self._key(key)
        try:
            try:
                return await self.client.getdel(full_key)
            except ResponseError:
                return await self.client.eval(_GETDEL_SCRIPT, 1, full_key)
        except RedisError as exc:
            raise StorageError("challenge store take failed") from exc

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisChallengeStore:
    """Synchronous Redis client behind the async challenge-store interface.

    Used in test mode so pytest event loops never bind the connection pool.
    """

    KEY_PREFIX = RedisChallengeStore.KEY_PREFIX

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}{key}"

    def verify_connection(self) -> None:
        self.client.ping()

    async def store(self, key: str, state: str, ttl_seconds: int) -> None:
        try:
            self.client.set(self._key(key), state, ex=max(1, int(ttl_seconds)))
        except RedisError as exc:
            raise StorageError("challenge store write failed") from exc

    async def get(self, key: str) -> Optional[str]:
        try:
            return self.client.get(self._key(key))
        except RedisError as exc:
            raise StorageError("challenge store read failed") from exc

    async def delete(self, key: str) -> None:
        try:
            self.client.delete(self._key(key))
        except RedisError as exc:
            raise StorageError("challenge store delete failed") from exc

    async def take(self, key: str) -> Optional[str]:
        full_key = self._key(key)
        try:
            try:
                return self.client.getdel(full_key)
            except ResponseError:
                return self.client.eval(_GETDEL_SCRIPT, 1, full_key)
        except RedisError as exc:
            raise StorageError("challenge store take failed") from exc

    async def close(self) -> None:
        self.client.close()
