"""Authenticated reads from the object storage service."""

from __future__ import annotations

import gzip
import zlib
from typing import Mapping, Optional
from urllib.parse import quote

import httpx
import structlog

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.settings import StorageSettings
from .cache_keys import accepts_gzip, join_object_path
from .credentials import SCOPE_STORAGE_READ, TokenSource
from .objects import FetchError, ObjectMeta, StorageObject


LOGGER = structlog.get_logger("bucketfront.storage.fetcher")

# client headers passed through to the backend as is
FORWARDED_HEADERS = ("if-modified-since", "if-none-match", "range", "user-agent")

BACKEND_REQUEST_COUNTER = GLOBAL_REGISTRY.register(
    Counter("bucketfront_backend_requests_total", "Requests sent to the storage backend")
)
BACKEND_ERROR_COUNTER = GLOBAL_REGISTRY.register(
    Counter("bucketfront_backend_errors_total", "Backend responses with an error status")
)


class ObjectFetcher:
    """Performs GET and HEAD requests against ``{base}/{bucket}/{name}``."""

    def __init__(
        self,
        settings: StorageSettings,
        tokens: TokenSource,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base = settings.gcs_base
        self._tokens = tokens
        self._client = client or httpx.AsyncClient(timeout=settings.fetch_timeout_seconds)
        self._owns_client = client is None

    def object_url(self, bucket: str, name: str) -> str:
        return f"{self._base}/{quote(join_object_path(bucket, name), safe='/')}"

    async def fetch(self, bucket: str, name: str, headers: Optional[Mapping[str, str]] = None) -> StorageObject:
        """Read the object body and whitelisted metadata.

        Raises :class:`FetchError` for backend error statuses and
        ``httpx.TransportError`` when no response was obtained.
        """
        status_code, response_headers, body = await self._send("GET", bucket, name, headers)
        meta = ObjectMeta.from_headers(response_headers)
        if status_code == 200 and not accepts_gzip(headers):
            body, meta = _decode_gzip(body, meta)
        return StorageObject(meta=meta, body=body, status_code=status_code)

    async def stat(self, bucket: str, name: str, headers: Optional[Mapping[str, str]] = None) -> StorageObject:
        """Like :meth:`fetch` but issues a HEAD request; the result has no body."""
        status_code, response_headers, _ = await self._send("HEAD", bucket, name, headers)
        return StorageObject(meta=ObjectMeta.from_headers(response_headers), status_code=status_code)

    async def _send(
        self,
        method: str,
        bucket: str,
        name: str,
        headers: Optional[Mapping[str, str]],
    ) -> tuple[int, httpx.Headers, bytes]:
        url = self.object_url(bucket, name)
        token = await self._tokens.token([SCOPE_STORAGE_READ])
        outbound = {k: v for k, v in (headers or {}).items() if k.lower() in FORWARDED_HEADERS}
        outbound["Accept-Encoding"] = "gzip"
        outbound["Authorization"] = f"Bearer {token}"
        request = self._client.build_request(method, url, headers=outbound)
        BACKEND_REQUEST_COUNTER.inc()
        response = await self._client.send(request, stream=True)
        try:
            if response.status_code > 399:
                BACKEND_ERROR_COUNTER.inc()
                raise FetchError(response.status_code, await _error_message(response))
            # raw bytes keep the backend's content-encoding intact
            body = b"".join([chunk async for chunk in response.aiter_raw()])
        finally:
            await response.aclose()
        return response.status_code, response.headers, body

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
        close_tokens = getattr(self._tokens, "aclose", None)
        if close_tokens is not None:
            await close_tokens()


async def _error_message(response: httpx.Response) -> str:
    status_line = f"{response.status_code} {response.reason_phrase}".strip()
    try:
        body = await response.aread()
    except httpx.HTTPError as exc:
        # the status code is what matters
        LOGGER.debug("backend_error_body_unreadable", status=response.status_code, error=str(exc))
        return status_line
    return f"{status_line}: {body.decode('utf-8', errors='replace')}"


def _decode_gzip(body: bytes, meta: ObjectMeta) -> tuple[bytes, ObjectMeta]:
    """Undo gzip transfer encoding for clients that cannot decode it."""
    if (meta.content_encoding or "").lower() != "gzip":
        return body, meta
    try:
        decoded = gzip.decompress(body)
    except (OSError, EOFError, zlib.error):
        LOGGER.warning("gzip_decode_failed", content_type=meta.content_type)
        return body, meta
    values = meta.as_dict()
    values.pop("content-encoding", None)
    return decoded, ObjectMeta.from_headers(values)
