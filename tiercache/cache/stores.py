"""Persistence primitives backing the durable cache tier.

A store exposes two operations:

* ``cached(key, fetcher, *, tags, ttl)`` returns the value persisted under
  ``key`` if it is still fresh, otherwise awaits ``fetcher``, persists the
  result tagged with ``tags`` for ``ttl`` seconds and returns it.
* ``revalidate_tag(tag)`` drops every entry carrying ``tag``. Revalidating an
  unknown or already revalidated tag is a no-op.
"""

import asyncio
import json
import time
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Sequence, Set, Tuple

import redis.asyncio as redis

from ..core.errors import StoreError
from ..monitoring.logging import get_logger

logger = get_logger(__name__)

Fetcher = Callable[[], Awaitable[Any]]


class PersistentStore(Protocol):
    """Tag-addressable, revalidate-by-TTL persistence primitive."""

    async def cached(self, key: str, fetcher: Fetcher, *, tags: Sequence[str], ttl: float) -> Any:
        ...

    async def revalidate_tag(self, tag: str) -> None:
        ...


class InMemoryPersistentStore:
    """Process-local store, for development and tests."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._tag_index: Dict[str, Set[str]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def cached(self, key: str, fetcher: Fetcher, *, tags: Sequence[str], ttl: float) -> Any:
        entry = self._entries.get(key)
        if entry is not None and entry[1] > self._clock():
            return entry[0]

        value = await fetcher()
        async with self._lock:
            self._entries[key] = (value, self._clock() + ttl)
            for tag in tags:
                self._tag_index[tag].add(key)
        return value

    async def revalidate_tag(self, tag: str) -> None:
        async with self._lock:
            for key in self._tag_index.pop(tag, set()):
                self._entries.pop(key, None)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry[1] > self._clock()

    def __len__(self) -> int:
        return len(self._entries)


class RedisPersistentStore:
    """Redis-backed store; values are JSON, tags are Redis sets of member keys."""

    def __init__(
        self,
        redis_url: str = None,
        client: Optional[redis.Redis] = None,
        namespace: str = "tiercache"
    ):
        if client is None and redis_url is None:
            raise StoreError("redis", "either redis_url or client is required")
        self.redis_url = redis_url
        self.namespace = namespace
        self.client: redis.Redis = client or redis.from_url(redis_url)

    def _value_key(self, key: str) -> str:
        return f"{self.namespace}:value:{key}"

    def _tag_key(self, tag: str) -> str:
        return f"{self.namespace}:tag:{tag}"

    async def initialize(self):
        """Verify connectivity."""
        await self.client.ping()
        logger.info("Redis durable store initialized", namespace=self.namespace)

    async def cached(self, key: str, fetcher: Fetcher, *, tags: Sequence[str], ttl: float) -> Any:
        value_key = self._value_key(key)
        cached_data = await self.client.get(value_key)
        if cached_data is not None:
            return json.loads(cached_data)

        value = await fetcher()
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StoreError("redis", f"value for '{key}' is not JSON serialisable: {e}") from e

        expire_seconds = max(1, int(round(ttl)))
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.setex(value_key, expire_seconds, payload)
            for tag in tags:
                tag_key = self._tag_key(tag)
                pipe.sadd(tag_key, value_key)
                # a tag set lives as long as its longest-lived member
                pipe.expire(tag_key, expire_seconds, nx=True)
                pipe.expire(tag_key, expire_seconds, gt=True)
            await pipe.execute()
        return value

    async def revalidate_tag(self, tag: str) -> None:
        tag_key = self._tag_key(tag)
        members = await self.client.smembers(tag_key)
        if members:
            await self.client.delete(*members)
        await self.client.delete(tag_key)

    async def close(self):
        await self.client.aclose()
