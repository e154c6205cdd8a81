from __future__ import annotations

import httpx
import pytest

from bucketfront.common.settings import StorageSettings
from bucketfront.storage.credentials import (
    SCOPE_STORAGE_READ,
    MetadataTokenSource,
    StaticTokenSource,
    build_token_source,
)


METADATA_URL = "http://metadata.test/token"


@pytest.mark.asyncio
async def test_static_token_source_ignores_scopes() -> None:
    source = StaticTokenSource("fixed")

    assert await source.token([SCOPE_STORAGE_READ]) == "fixed"


@pytest.mark.asyncio
async def test_metadata_token_is_cached_until_expiry() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"access_token": f"tok-{len(seen)}", "expires_in": 3600})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    source = MetadataTokenSource(METADATA_URL, client=client)

    first = await source.token([SCOPE_STORAGE_READ])
    second = await source.token([SCOPE_STORAGE_READ])

    assert first == second == "tok-1"
    assert len(seen) == 1
    assert seen[0].headers["metadata-flavor"] == "Google"
    assert seen[0].url.params["scopes"] == SCOPE_STORAGE_READ


@pytest.mark.asyncio
async def test_metadata_token_refreshes_near_expiry() -> None:
    count = [0]

    def handler(request: httpx.Request) -> httpx.Response:
        count[0] += 1
        return httpx.Response(200, json={"access_token": f"tok-{count[0]}", "expires_in": 30})

    source = MetadataTokenSource(METADATA_URL, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    assert await source.token([SCOPE_STORAGE_READ]) == "tok-1"
    assert await source.token([SCOPE_STORAGE_READ]) == "tok-2"


@pytest.mark.asyncio
async def test_metadata_errors_propagate() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="no service account")

    source = MetadataTokenSource(METADATA_URL, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    with pytest.raises(httpx.HTTPStatusError):
        await source.token([SCOPE_STORAGE_READ])


def test_build_token_source_prefers_configured_token() -> None:
    assert isinstance(build_token_source(StorageSettings(access_token="t")), StaticTokenSource)
    assert isinstance(build_token_source(StorageSettings()), MetadataTokenSource)
