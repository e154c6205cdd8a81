"""Path-style access to bucket objects with directory index resolution."""

from __future__ import annotations

import asyncio
import posixpath
from typing import Mapping, Optional

import structlog
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.settings import StorageSettings
from .cache_keys import CacheKeyPolicy
from .cache_store import CACHE_HIT_COUNTER, CACHE_MISS_COUNTER, CacheStore, build_cache_store
from .credentials import build_token_source
from .fetcher import ObjectFetcher
from .objects import DEFAULT_REDIRECT_CODE, FetchError, StorageObject


LOGGER = structlog.get_logger("bucketfront.storage")
TRACER = trace.get_tracer("bucketfront.storage")

DIRECTORY_REDIRECT_COUNTER = GLOBAL_REGISTRY.register(
    Counter("bucketfront_directory_redirects_total", "Directory names redirected to their index form")
)
PURGE_COUNTER = GLOBAL_REGISTRY.register(Counter("bucketfront_cache_purges_total", "Objects purged from cache"))


class Storage:
    """Serves bucket objects as files, consulting the cache before the backend."""

    def __init__(
        self,
        settings: StorageSettings,
        fetcher: ObjectFetcher,
        cache: CacheStore,
        keys: Optional[CacheKeyPolicy] = None,
    ) -> None:
        self._settings = settings
        self._fetcher = fetcher
        self._cache = cache
        self._keys = keys or CacheKeyPolicy(settings.gcs_base)
        # speculative index lookups still running after their request finished
        self._speculative: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: StorageSettings) -> "Storage":
        fetcher = ObjectFetcher(settings, build_token_source(settings))
        return cls(settings, fetcher, build_cache_store(settings))

    @property
    def cache(self) -> CacheStore:
        return self._cache

    def cache_key(self, bucket: str, name: str, headers: Optional[Mapping[str, str]] = None) -> str:
        return self._keys.cache_key(bucket, name, headers)

    async def open_file(
        self,
        bucket: str,
        name: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> StorageObject:
        """Resolve ``name`` like a file path.

        Names that are empty or end with a slash get the index appended.
        A name without an extension may also be a directory: its index is
        looked up concurrently with the object itself, and if the object is
        missing while the index exists, a redirect to ``/name/`` is returned.
        Raises :class:`FetchError` with the status of the direct lookup otherwise.
        """
        index = self._settings.index
        name = name.lstrip("/")
        if not name or name.endswith("/"):
            name += index
        check_stat = not name.endswith(index) and "." not in posixpath.basename(name)

        with TRACER.start_as_current_span(
            "storage.open_file",
            attributes={"bucketfront.bucket": bucket, "bucketfront.object": name},
        ) as span:
            stat_task: Optional[asyncio.Task] = None
            if check_stat:
                stat_task = asyncio.create_task(self.stat(bucket, posixpath.join(name, index), headers))
                self._speculative.add(stat_task)
                stat_task.add_done_callback(self._speculative_done)

            try:
                return await self.open(bucket, name, headers)
            except FetchError as exc:
                if stat_task is None or not exc.not_found:
                    raise
                primary = exc

            try:
                found = await asyncio.wait_for(asyncio.shield(stat_task), self._settings.stat_timeout_seconds)
            except asyncio.TimeoutError:
                LOGGER.error("index_stat_timeout", bucket=bucket, name=name)
                raise primary from None
            except Exception:  # noqa: BLE001
                raise primary from None

            span.set_attribute("bucketfront.redirect", True)
            if found.is_redirect:
                return found
            DIRECTORY_REDIRECT_COUNTER.inc()
            target = "/" + posixpath.normpath(name).lstrip("/") + "/"
            return StorageObject.redirect(target, DEFAULT_REDIRECT_CODE)

    async def open(self, bucket: str, name: str, headers: Optional[Mapping[str, str]] = None) -> StorageObject:
        """Read an object from cache, or from the backend caching the result."""
        use_cache = self._keys.cacheable(headers)
        key = self.cache_key(bucket, name, headers)
        if use_cache:
            cached = await self._cache.get(key)
            if cached is not None:
                CACHE_HIT_COUNTER.inc()
                return cached
            CACHE_MISS_COUNTER.inc()
        obj = await self._fetcher.fetch(bucket, name, headers)
        if use_cache and obj.status_code == 200 and obj.size <= self._settings.cache_item_max_bytes:
            await self._cache.put(key, obj, self._settings.cache_ttl_seconds)
        return obj

    async def stat(self, bucket: str, name: str, headers: Optional[Mapping[str, str]] = None) -> StorageObject:
        """Like :meth:`open` but the backend is asked with HEAD; cached entries may carry a body."""
        if self._keys.cacheable(headers):
            cached = await self._cache.get(self.cache_key(bucket, name, headers))
            if cached is not None:
                return cached
        return await self._fetcher.stat(bucket, name)

    async def purge(self, bucket: str, name: str) -> None:
        """Remove every cached variant of an object.

        Missing entries are not an error. Raises
        :class:`~bucketfront.storage.cache_store.CacheStoreError` when the
        store could not be reached, so that the notifier retries.
        """
        keys = self._keys.variant_keys(bucket, name)
        with TRACER.start_as_current_span("storage.purge", attributes={"bucketfront.bucket": bucket}):
            await self._cache.delete_all(keys)
        PURGE_COUNTER.inc()
        LOGGER.info("cache_purged", bucket=bucket, name=name, keys=len(keys))

    def _speculative_done(self, task: asyncio.Task) -> None:
        self._speculative.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not isinstance(exc, FetchError):
            LOGGER.debug("index_stat_failed", error=str(exc))

    async def aclose(self) -> None:
        for task in list(self._speculative):
            task.cancel()
        await self._fetcher.aclose()
        await self._cache.aclose()
