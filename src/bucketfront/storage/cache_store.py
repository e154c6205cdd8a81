"""Cache stores holding serialized objects under cache keys with a TTL."""

from __future__ import annotations

import base64
import json
import time
from collections import OrderedDict
from typing import Iterable, Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.settings import StorageSettings
from .objects import ObjectMeta, StorageObject


LOGGER = structlog.get_logger("bucketfront.storage.cache")

_clock = time.monotonic

CACHE_HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("bucketfront_cache_hits_total", "Objects served from cache"))
CACHE_MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("bucketfront_cache_misses_total", "Cache lookups that missed"))
CACHE_ERROR_COUNTER = GLOBAL_REGISTRY.register(
    Counter("bucketfront_cache_errors_total", "Cache store operations that failed")
)


class CacheStoreError(Exception):
    """The cache store failed for a reason other than a missing key."""


def encode_entry(obj: StorageObject) -> bytes:
    payload = {
        "meta": obj.meta.as_dict(),
        "body": base64.b64encode(obj.body).decode("ascii") if obj.body is not None else None,
    }
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def decode_entry(raw: bytes | str) -> StorageObject:
    """Inverse of :func:`encode_entry`; raises ``ValueError`` on malformed input."""
    try:
        payload = json.loads(raw)
        body = payload["body"]
        return StorageObject(
            meta=ObjectMeta.from_headers(payload["meta"]),
            body=base64.b64decode(body, validate=True) if body is not None else None,
        )
    except (KeyError, TypeError, AttributeError, ValueError) as exc:
        raise ValueError(f"malformed cache entry: {exc}") from exc


class CacheStore:
    """Key/value store for objects.

    ``get`` and ``put`` never raise: a failing store degrades to live fetches.
    ``delete`` and ``delete_all`` treat missing keys as success and raise
    :class:`CacheStoreError` only for real storage failures.
    """

    async def get(self, key: str) -> Optional[StorageObject]:  # pragma: no cover - interface
        raise NotImplementedError

    async def put(self, key: str, obj: StorageObject, ttl: float) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        await self.delete_all([key])

    async def delete_all(self, keys: Iterable[str]) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def status(self) -> dict[str, object]:  # pragma: no cover - interface
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class CircuitBreaker:
    def __init__(self, failure_threshold: int, reset_timeout: float):
        self._failure_threshold = max(1, failure_threshold)
        self._reset_timeout = max(0.0, reset_timeout)
        self._failure_count = 0
        self._opened_at: float | None = None

    def _maybe_reset(self) -> None:
        if self._opened_at is None:
            return
        if _clock() - self._opened_at >= self._reset_timeout:
            self._opened_at = None
            self._failure_count = 0

    def allow_request(self) -> bool:
        self._maybe_reset()
        return self._opened_at is None

    def record_success(self) -> None:
        self._failure_count = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._failure_count += 1
        if self._failure_count >= self._failure_threshold:
            self._opened_at = _clock()

    @property
    def is_open(self) -> bool:
        self._maybe_reset()
        return self._opened_at is not None


class RedisCacheStore(CacheStore):
    """Shared cache backed by Redis."""

    def __init__(self, redis: Redis, max_item_bytes: int, breaker: Optional[CircuitBreaker] = None) -> None:
        self._redis = redis
        self._max_item_bytes = max_item_bytes
        self._breaker = breaker or CircuitBreaker(failure_threshold=5, reset_timeout=30.0)

    async def get(self, key: str) -> Optional[StorageObject]:
        if not self._breaker.allow_request():
            return None
        try:
            raw = await self._redis.get(key)
        except RedisError as exc:
            self._breaker.record_failure()
            CACHE_ERROR_COUNTER.inc()
            LOGGER.error("cache_get_failed", key=key, error=str(exc))
            return None
        self._breaker.record_success()
        if raw is None:
            return None
        try:
            return decode_entry(raw)
        except ValueError as exc:
            CACHE_ERROR_COUNTER.inc()
            LOGGER.warning("cache_entry_corrupt", key=key, error=str(exc))
            return None

    async def put(self, key: str, obj: StorageObject, ttl: float) -> None:
        if obj.size > self._max_item_bytes or not self._breaker.allow_request():
            return
        try:
            await self._redis.set(key, encode_entry(obj), px=max(1, int(ttl * 1000)))
        except RedisError as exc:
            self._breaker.record_failure()
            CACHE_ERROR_COUNTER.inc()
            LOGGER.error("cache_put_failed", key=key, error=str(exc))
            return
        self._breaker.record_success()

    async def delete_all(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        if not keys:
            return
        # deletes bypass the breaker so a purge never reports success without reaching redis
        try:
            await self._redis.delete(*keys)
        except RedisError as exc:
            self._breaker.record_failure()
            CACHE_ERROR_COUNTER.inc()
            raise CacheStoreError(f"failed to delete {len(keys)} cache keys: {exc}") from exc
        self._breaker.record_success()

    def status(self) -> dict[str, object]:
        return {"backend": "redis", "circuit_open": self._breaker.is_open}

    async def aclose(self) -> None:
        await self._redis.aclose()


class InMemoryCacheStore(CacheStore):
    """Per-process LRU cache bounded by entry count."""

    def __init__(self, max_entries: int, max_item_bytes: int) -> None:
        self._max_entries = max(1, max_entries)
        self._max_item_bytes = max_item_bytes
        self._entries: OrderedDict[str, tuple[StorageObject, float]] = OrderedDict()

    async def get(self, key: str) -> Optional[StorageObject]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        obj, expires_at = entry
        if expires_at <= _clock():
            self._entries.pop(key, None)
            return None
        self._entries.move_to_end(key)
        return obj

    async def put(self, key: str, obj: StorageObject, ttl: float) -> None:
        if obj.size > self._max_item_bytes or ttl <= 0:
            return
        self._entries[key] = (obj, _clock() + ttl)
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    async def delete_all(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)

    def status(self) -> dict[str, object]:
        return {"backend": "memory", "entries": len(self._entries), "max_entries": self._max_entries}


class TieredCacheStore(CacheStore):
    """A short-lived local tier in front of a shared store.

    A purge reaches the shared store and the local tier of the handling
    process only, so the local TTL bounds staleness elsewhere.
    """

    def __init__(self, local: CacheStore, shared: CacheStore, local_ttl: float) -> None:
        self._local = local
        self._shared = shared
        self._local_ttl = local_ttl

    async def get(self, key: str) -> Optional[StorageObject]:
        obj = await self._local.get(key)
        if obj is not None:
            return obj
        obj = await self._shared.get(key)
        if obj is not None:
            await self._local.put(key, obj, self._local_ttl)
        return obj

    async def put(self, key: str, obj: StorageObject, ttl: float) -> None:
        await self._local.put(key, obj, min(ttl, self._local_ttl))
        await self._shared.put(key, obj, ttl)

    async def delete_all(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        await self._local.delete_all(keys)
        await self._shared.delete_all(keys)

    def status(self) -> dict[str, object]:
        shared = self._shared.status()
        return {
            "backend": "tiered",
            "circuit_open": bool(shared.get("circuit_open")),
            "local": self._local.status(),
            "shared": shared,
        }

    async def aclose(self) -> None:
        await self._local.aclose()
        await self._shared.aclose()


# entry count for the process-wide store used when no redis is configured
DEFAULT_MEMORY_ENTRIES = 1024


def build_cache_store(settings: StorageSettings) -> CacheStore:
    max_item = settings.cache_item_max_bytes
    if not settings.redis_url:
        size = settings.local_cache_size or DEFAULT_MEMORY_ENTRIES
        return InMemoryCacheStore(size, max_item)
    breaker = CircuitBreaker(
        failure_threshold=settings.redis_circuit_breaker_failures,
        reset_timeout=settings.redis_circuit_breaker_reset_seconds,
    )
    shared = RedisCacheStore(Redis.from_url(settings.redis_url), max_item, breaker)
    if settings.local_cache_size > 0:
        local = InMemoryCacheStore(settings.local_cache_size, max_item)
        return TieredCacheStore(local, shared, settings.local_cache_ttl_seconds)
    return shared
