"""Valkey (Redis-compatible) client for the event queue and sweep lock."""

import uuid

import redis.asyncio as redis

from tinyfeedback.config import get_settings

settings = get_settings()

# Global connection pool
_pool: redis.ConnectionPool | None = None


async def get_valkey() -> redis.Redis:
    """Get Valkey client with connection pooling."""
    global _pool
    if _pool is None:
        _pool = redis.ConnectionPool.from_url(
            settings.VALKEY_URL,
            decode_responses=True,
        )
    return redis.Redis(connection_pool=_pool)


async def close_valkey():
    """Close Valkey connection pool."""
    global _pool
    if _pool is not None:
        await _pool.disconnect()
        _pool = None


class SweepLock:
    """Cross-process single-flight lock for the retry sweep."""

    KEY = "webhook:sweep:lock"

    # Release only if we still own the lock
    _RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    end
    return 0
    """

    def __init__(self, ttl_seconds: int):
        self._ttl = ttl_seconds
        self._token: str | None = None

    async def acquire(self) -> bool:
        """Try to take the lock; expires after the TTL if never released."""
        client = await get_valkey()
        token = uuid.uuid4().hex
        acquired = await client.set(self.KEY, token, nx=True, ex=self._ttl)
        if acquired:
            self._token = token
            return True
        return False

    async def release(self) -> None:
        if self._token is None:
            return
        client = await get_valkey()
        await client.eval(self._RELEASE_SCRIPT, 1, self.KEY, self._token)
        self._token = None
