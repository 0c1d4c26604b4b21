"""Shared state store adapter.

Thin async wrapper around ``redis.asyncio`` exposing only the primitives the
signaling core relies on. Every instance of the service talks to the same
redis, which is what gives rooms, counters and rate-limit buckets a single
cross-instance view.

Connection and timeout failures are translated into
:class:`~pairlink.errors.StoreUnavailable` so callers can apply their own
degradation policy (fail open, fail closed, skip). Any other redis error is a
bug and propagates unchanged.
"""
import logging
from typing import Callable, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from pairlink.config import AppSettings
from pairlink.errors import StoreUnavailable

logger = logging.getLogger(__name__)

_UNAVAILABLE = (RedisConnectionError, RedisTimeoutError, OSError)

UPDATE_ATTEMPTS = 5


class StateStore:
    """Atomic per-key operations over the shared redis instance."""

    def __init__(self, client: "redis.Redis") -> None:
        self.client = client

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "StateStore":
        client = redis.from_url(
            settings.redis.url,
            password=settings.secrets.redis.password,
            socket_timeout=settings.redis.socket_timeout,
            decode_responses=True,
        )
        logger.info("[Store] Redis client configured for %s", settings.redis.url)
        return cls(client)

    async def _run(self, op: str, awaitable):
        try:
            return await awaitable
        except _UNAVAILABLE as e:
            logger.warning("[Store] %s failed, redis unreachable: %s", op, e)
            raise StoreUnavailable() from e

    # -----------------------------------------------------------------------
    # Health
    # -----------------------------------------------------------------------

    async def ping(self) -> bool:
        """Return True when redis answers, False otherwise. Never raises."""
        try:
            return bool(await self.client.ping())
        except _UNAVAILABLE as e:
            logger.debug("[Store] ping failed: %s", e)
            return False

    async def close(self) -> None:
        await self.client.aclose()

    # -----------------------------------------------------------------------
    # Hashes
    # -----------------------------------------------------------------------

    async def hget(self, key: str, field: str) -> Optional[str]:
        return await self._run("HGET", self.client.hget(key, field))

    async def hset(self, key: str, field: str, value: str) -> int:
        return await self._run("HSET", self.client.hset(key, field, value))

    async def hset_many(self, key: str, mapping: Dict[str, str]) -> int:
        return await self._run("HSET", self.client.hset(key, mapping=mapping))

    async def hdel(self, key: str, field: str) -> int:
        return await self._run("HDEL", self.client.hdel(key, field))

    async def hlen(self, key: str) -> int:
        return await self._run("HLEN", self.client.hlen(key))

    async def hexists(self, key: str, field: str) -> bool:
        return bool(await self._run("HEXISTS", self.client.hexists(key, field)))

    async def hgetall(self, key: str) -> Dict[str, str]:
        return await self._run("HGETALL", self.client.hgetall(key))

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return await self._run("HINCRBY", self.client.hincrby(key, field, amount))

    async def hupdate(
        self, key: str, field: str, update: Callable[[str], Optional[str]]
    ) -> Optional[str]:
        """Rewrite an existing hash field under WATCH/MULTI.

        *update* receives the current value and returns the new one, or None
        to leave the field alone. A field that is missing, or deleted while
        the update is in flight, is never recreated. Returns the value written,
        or None when nothing was written.
        """
        async def _transaction() -> Optional[str]:
            async with self.client.pipeline(transaction=True) as pipe:
                for _ in range(UPDATE_ATTEMPTS):
                    try:
                        await pipe.watch(key)
                        current = await pipe.hget(key, field)
                        if current is None:
                            return None
                        new = update(current)
                        if new is None:
                            return None
                        pipe.multi()
                        pipe.hset(key, field, new)
                        await pipe.execute()
                        return new
                    except WatchError:
                        logger.debug("[Store] %s/%s changed during update, retrying", key, field)
                logger.warning("[Store] Gave up updating %s/%s after %s attempts",
                               key, field, UPDATE_ATTEMPTS)
                return None

        return await self._run("HUPDATE", _transaction())

    # -----------------------------------------------------------------------
    # Strings / counters
    # -----------------------------------------------------------------------

    async def get(self, key: str) -> Optional[str]:
        return await self._run("GET", self.client.get(key))

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        return await self._run("SET", self.client.set(key, value, ex=ex))

    async def incrby(self, key: str, amount: int = 1) -> int:
        return await self._run("INCRBY", self.client.incrby(key, amount))

    async def decrby(self, key: str, amount: int = 1) -> int:
        return await self._run("DECRBY", self.client.decrby(key, amount))

    # -----------------------------------------------------------------------
    # Lists
    # -----------------------------------------------------------------------

    async def lpush_capped(self, key: str, value: str, max_len: int) -> None:
        """Push to the head of a list and keep only the newest *max_len* items."""
        await self._run("LPUSH", self.client.lpush(key, value))
        await self._run("LTRIM", self.client.ltrim(key, 0, max_len - 1))

    async def lrange(self, key: str, start: int = 0, end: int = -1) -> List[str]:
        return await self._run("LRANGE", self.client.lrange(key, start, end))

    # -----------------------------------------------------------------------
    # Keys
    # -----------------------------------------------------------------------

    async def expire(self, key: str, seconds: int) -> bool:
        return await self._run("EXPIRE", self.client.expire(key, seconds))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._run("DEL", self.client.delete(*keys))

    async def exists(self, key: str) -> bool:
        return bool(await self._run("EXISTS", self.client.exists(key)))

    async def scan_keys(self, pattern: str) -> List[str]:
        """List keys matching *pattern* using SCAN (non-blocking on the server)."""
        async def _collect() -> List[str]:
            return [key async for key in self.client.scan_iter(match=pattern)]

        return await self._run("SCAN", _collect())
