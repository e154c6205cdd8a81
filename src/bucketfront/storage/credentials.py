"""OAuth2 access tokens for authenticating calls to the storage backend."""

from __future__ import annotations

import asyncio
import time
from typing import Optional, Protocol, Sequence

import httpx
import structlog

from ..common.settings import StorageSettings


LOGGER = structlog.get_logger("bucketfront.storage.credentials")

SCOPE_STORAGE_READ = "https://www.googleapis.com/auth/devstorage.read_only"

# refresh this many seconds before the reported expiry
EXPIRY_MARGIN_SECONDS = 60.0


class TokenSource(Protocol):
    async def token(self, scopes: Sequence[str]) -> str:  # pragma: no cover - interface
        ...


class StaticTokenSource:
    """Returns a fixed bearer token regardless of scopes."""

    def __init__(self, token: str) -> None:
        self._token = token

    async def token(self, scopes: Sequence[str]) -> str:
        return self._token


class MetadataTokenSource:
    """Fetches service account tokens from the instance metadata server.

    Tokens are cached per scope set until shortly before they expire.
    """

    def __init__(self, metadata_url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 5.0) -> None:
        self._url = metadata_url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._cache: dict[tuple[str, ...], tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    async def token(self, scopes: Sequence[str]) -> str:
        key = tuple(sorted(scopes))
        cached = self._cache.get(key)
        if cached and cached[1] > time.monotonic():
            return cached[0]
        async with self._lock:
            cached = self._cache.get(key)
            if cached and cached[1] > time.monotonic():
                return cached[0]
            value, expires_in = await self._request(key)
            self._cache[key] = (value, time.monotonic() + max(0.0, expires_in - EXPIRY_MARGIN_SECONDS))
            return value

    async def _request(self, scopes: tuple[str, ...]) -> tuple[str, float]:
        params = {"scopes": ",".join(scopes)} if scopes else None
        response = await self._client.get(self._url, params=params, headers={"Metadata-Flavor": "Google"})
        response.raise_for_status()
        payload = response.json()
        LOGGER.debug("access_token_refreshed", scopes=list(scopes), expires_in=payload.get("expires_in"))
        return payload["access_token"], float(payload.get("expires_in", 0))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def build_token_source(settings: StorageSettings) -> TokenSource:
    if settings.access_token is not None:
        return StaticTokenSource(settings.access_token.get_secret_value())
    return MetadataTokenSource(settings.metadata_url)
