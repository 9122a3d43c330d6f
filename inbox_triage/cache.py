"""
Dedup cache: remembers which email ids were recently triaged so the same
message is not run through the pipeline twice inside the TTL window.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import redis.asyncio as aioredis

from inbox_triage.config import Settings, settings
from inbox_triage.logger import get_logger

logger = get_logger(__name__)


class ProcessingCache(Protocol):
    """Capability the triage service depends on."""

    async def has(self, email_id: str) -> bool: ...

    async def set(self, email_id: str, ttl_seconds: int = 3600) -> None: ...

    async def delete(self, email_id: str) -> None: ...


@dataclass
class _Entry:
    timestamp: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.timestamp > self.ttl


class InMemoryProcessingCache:
    """
    Single-instance cache backed by a dict of id -> (timestamp, ttl).

    Expired entries are evicted lazily on `has` and in bulk by `sweep`,
    which a background task runs every `cleanup_interval` seconds once
    `start()` is called. Entries do not survive a restart.

    Args:
        cleanup_interval: Seconds between sweeps
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(self, cleanup_interval: float = 300, clock: Callable[[], float] = time.monotonic):
        self._entries: dict[str, _Entry] = {}
        self._cleanup_interval = cleanup_interval
        self._clock = clock
        self._sweeper: Optional[asyncio.Task] = None

    async def has(self, email_id: str) -> bool:
        entry = self._entries.get(email_id)
        if entry is None:
            return False
        if entry.expired(self._clock()):
            del self._entries[email_id]
            return False
        return True

    async def set(self, email_id: str, ttl_seconds: int = 3600) -> None:
        self._entries[email_id] = _Entry(timestamp=self._clock(), ttl=ttl_seconds)

    async def delete(self, email_id: str) -> None:
        self._entries.pop(email_id, None)

    def sweep(self) -> int:
        """Evict every expired entry. Returns how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Evicted expired cache entries", extra={"count": len(expired)})
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> dict:
        return {
            "size": len(self._entries),
            "entries": list(self._entries),
        }

    # --- Background sweep ---

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_forever())

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval)
            self.sweep()

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        self.clear()


class RedisProcessingCache:
    """
    Multi-instance cache on Redis; expiry is delegated to SETEX.

    Args:
        redis_client: Optional injected client (for testing)
        prefix: Key prefix
    """

    def __init__(self, redis_client: Optional[aioredis.Redis] = None, prefix: str = "triage:processed:"):
        self._redis = redis_client
        self._prefix = prefix

    @property
    def redis(self) -> aioredis.Redis:
        """Lazy initialization of Redis connection."""
        if self._redis is None:
            self._redis = aioredis.from_url(
                settings.redis_url,
                max_connections=settings.redis_max_connections,
                socket_timeout=5,
                decode_responses=True
            )
            logger.info("Connected to Redis processing cache")
        return self._redis

    def _key(self, email_id: str) -> str:
        return f"{self._prefix}{email_id}"

    async def has(self, email_id: str) -> bool:
        return bool(await self.redis.exists(self._key(email_id)))

    async def set(self, email_id: str, ttl_seconds: int = 3600) -> None:
        await self.redis.setex(self._key(email_id), ttl_seconds, "1")

    async def delete(self, email_id: str) -> None:
        await self.redis.delete(self._key(email_id))

    async def stop(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def create_processing_cache(config: Settings = settings) -> ProcessingCache:
    """Pick the cache backend from settings."""
    if config.cache_backend == "redis":
        return RedisProcessingCache(prefix=config.cache_key_prefix)
    return InMemoryProcessingCache(cleanup_interval=config.cache_cleanup_interval)
