"""Freshness layer for trend reads - weak ETags and short-TTL memoization.

The cache is a capability passed in from the app (`app.state.trend_cache`),
backed either by a bounded in-process LRU or by Redis. Entries are JSON
payloads keyed by account and window; the TTL is short enough that a sync
finishing shows up within seconds.
"""

import hashlib
import json
import logging
import time
from collections import OrderedDict
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Optional, Protocol

import redis.asyncio as redis

from config import Settings

logger = logging.getLogger(__name__)

CACHE_PREFIX = "insights:trend:"


class DateTimeEncoder(json.JSONEncoder):
    """JSON encoder that handles date and datetime objects."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        return super().default(obj)


def canonical_json(payload: Any) -> str:
    return json.dumps(payload, cls=DateTimeEncoder, sort_keys=True, separators=(",", ":"))


def fingerprint(payload: Any) -> str:
    """Weak ETag over the canonical JSON of a payload."""
    digest = hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()
    return f'W/"{digest[:32]}"'


def etag_matches(if_none_match: Optional[str], etag: str) -> bool:
    """RFC 7232 weak comparison against an If-None-Match header."""
    if not if_none_match:
        return False
    candidates = [c.strip() for c in if_none_match.split(",")]
    if "*" in candidates:
        return True
    bare = etag.removeprefix("W/")
    return any(c.removeprefix("W/") == bare for c in candidates)


def trend_cache_key(account_id: str, days: int) -> str:
    return f"{CACHE_PREFIX}{account_id}:{days}"


class CacheBackend(Protocol):
    ttl: int

    async def get(self, key: str) -> Optional[dict]: ...

    async def set(self, key: str, value: dict, ttl: Optional[int] = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def close(self) -> None: ...


class InMemoryTTLCache:
    """Bounded LRU with per-entry expiry, for a single process."""

    def __init__(
        self,
        ttl: int = 10,
        max_entries: int = 512,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, dict]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> Optional[dict]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return value

    async def set(self, key: str, value: dict, ttl: Optional[int] = None) -> None:
        self._entries[key] = (self._clock() + (ttl or self.ttl), value)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def close(self) -> None:
        self._entries.clear()


class RedisTrendCache:
    """Shared cache for multiple app instances."""

    def __init__(self, client: redis.Redis, ttl: int = 10):
        self._client = client
        self.ttl = ttl

    @classmethod
    def from_url(cls, url: str, ttl: int = 10) -> "RedisTrendCache":
        client = redis.from_url(url, encoding="utf-8", decode_responses=True)
        return cls(client, ttl=ttl)

    async def get(self, key: str) -> Optional[dict]:
        try:
            data = await self._client.get(key)
        except redis.RedisError as e:
            logger.warning(f"Trend cache read failed: {e}")
            return None
        if data is None:
            return None
        return json.loads(data)

    async def set(self, key: str, value: dict, ttl: Optional[int] = None) -> None:
        try:
            await self._client.set(key, canonical_json(value), ex=ttl or self.ttl)
        except redis.RedisError as e:
            logger.warning(f"Trend cache write failed: {e}")

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def health_check(self) -> bool:
        try:
            await self._client.ping()
            return True
        except redis.RedisError:
            return False

    async def close(self) -> None:
        await self._client.aclose()


def build_trend_cache(settings: Settings) -> CacheBackend:
    if settings.trend_cache_backend == "redis":
        return RedisTrendCache.from_url(settings.redis_url, ttl=settings.trend_cache_ttl_seconds)
    return InMemoryTTLCache(
        ttl=settings.trend_cache_ttl_seconds,
        max_entries=settings.trend_cache_max_entries,
    )


class FreshnessLayer:
    """Get-or-compute over the cache, returning the payload and its ETag."""

    def __init__(self, cache: CacheBackend):
        self.cache = cache

    async def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[dict]],
        cacheable: Callable[[dict], bool] = lambda payload: True,
    ) -> tuple[dict, str]:
        payload = await self.cache.get(key)
        if payload is None:
            payload = await compute()
            if cacheable(payload):
                await self.cache.set(key, payload)
        return payload, fingerprint(payload)
