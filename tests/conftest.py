from __future__ import annotations

import asyncio
from typing import Callable

import httpx
import pytest

from bucketfront.common.settings import StorageSettings
from bucketfront.storage.cache_store import CacheStore, InMemoryCacheStore
from bucketfront.storage.credentials import StaticTokenSource
from bucketfront.storage.fetcher import ObjectFetcher
from bucketfront.storage.resolver import Storage


GCS_BASE = "https://storage.test"


class FakeGCS:
    """In-memory stand-in for the storage service, served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, dict[str, str]]] = {}
        self.errors: dict[str, int] = {}
        self.delays: dict[str, float] = {}
        self.requests: list[httpx.Request] = []

    def add(self, path: str, body: bytes, **headers: str) -> None:
        meta = {k.replace("_", "-"): v for k, v in headers.items()}
        meta.setdefault("content-type", "text/html")
        self.objects[path] = (body, meta)

    def calls(self, method: str, path: str | None = None) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if r.method == method and (path is None or r.url.path == f"/{path}")
        ]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.lstrip("/")
        delay = self.delays.get(path)
        if delay:
            await asyncio.sleep(delay)
        if path in self.errors:
            return httpx.Response(self.errors[path], text=f"error for {path}")
        if path not in self.objects:
            return httpx.Response(404, text="<Error><Code>NoSuchKey</Code></Error>")
        body, headers = self.objects[path]
        # streamed like a real response so the fetcher can read raw bytes
        if request.method == "HEAD":
            return httpx.Response(200, headers=headers, stream=httpx.ByteStream(b""))
        return httpx.Response(200, headers=headers, stream=httpx.ByteStream(body))

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def gcs() -> FakeGCS:
    return FakeGCS()


@pytest.fixture
def make_storage(gcs: FakeGCS) -> Callable[..., Storage]:
    def _factory(cache: CacheStore | None = None, **overrides) -> Storage:
        settings = StorageSettings(gcs_base=GCS_BASE, access_token="test-token", **overrides)
        client = httpx.AsyncClient(transport=gcs.transport())
        fetcher = ObjectFetcher(settings, StaticTokenSource("test-token"), client=client)
        if cache is None:
            cache = InMemoryCacheStore(128, settings.cache_item_max_bytes)
        return Storage(settings, fetcher, cache)

    return _factory
