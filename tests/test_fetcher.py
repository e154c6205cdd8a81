from __future__ import annotations

import gzip

import httpx
import pytest

from bucketfront.common.settings import StorageSettings
from bucketfront.storage.credentials import SCOPE_STORAGE_READ, StaticTokenSource
from bucketfront.storage.fetcher import ObjectFetcher
from bucketfront.storage.objects import FetchError


class RecordingTokens:
    def __init__(self) -> None:
        self.scopes: list[list[str]] = []

    async def token(self, scopes):
        self.scopes.append(list(scopes))
        return "scoped-token"


class FailingStream(httpx.AsyncByteStream):
    async def __aiter__(self):
        raise httpx.ReadError("connection reset")
        yield b""  # pragma: no cover


def _streamed(status: int, body: bytes = b"", headers: dict | None = None) -> httpx.Response:
    return httpx.Response(status, headers=headers, stream=httpx.ByteStream(body))


def _fetcher(handler, tokens=None) -> ObjectFetcher:
    settings = StorageSettings(gcs_base="https://storage.test/", access_token="unused")
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ObjectFetcher(settings, tokens or StaticTokenSource("test-token"), client=client)


@pytest.mark.asyncio
async def test_fetch_forwards_whitelisted_headers_only() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return _streamed(200, b"ok")

    tokens = RecordingTokens()
    fetcher = _fetcher(handler, tokens)
    await fetcher.fetch(
        "bucket",
        "page.html",
        {
            "If-None-Match": '"v1"',
            "Range": "bytes=0-10",
            "User-Agent": "curl/8",
            "Cookie": "session=secret",
            "Authorization": "Basic client",
            "Accept-Encoding": "br",
        },
    )

    request = seen[0]
    assert str(request.url) == "https://storage.test/bucket/page.html"
    assert request.headers["if-none-match"] == '"v1"'
    assert request.headers["range"] == "bytes=0-10"
    assert request.headers["user-agent"] == "curl/8"
    assert request.headers["accept-encoding"] == "gzip"
    assert request.headers["authorization"] == "Bearer scoped-token"
    assert "cookie" not in request.headers
    assert tokens.scopes == [[SCOPE_STORAGE_READ]]


@pytest.mark.asyncio
async def test_fetch_projects_whitelisted_response_headers() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return _streamed(
            200,
            b"body",
            headers={
                "Content-Type": "text/css",
                "Cache-Control": "public, max-age=60",
                "ETag": '"abc"',
                "X-GUploader-UploadID": "internal",
                "X-Goog-Meta-Redirect": "/elsewhere",
            },
        )

    obj = await _fetcher(handler).fetch("bucket", "style.css")

    assert obj.body == b"body"
    assert obj.meta.as_dict() == {
        "cache-control": "public, max-age=60",
        "content-type": "text/css",
        "etag": '"abc"',
        "redirect-target": "/elsewhere",
    }
    assert obj.redirect_target == "/elsewhere"
    assert obj.redirect_code == 301


@pytest.mark.asyncio
async def test_error_status_becomes_fetch_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="NoSuchKey")

    with pytest.raises(FetchError) as exc:
        await _fetcher(handler).fetch("bucket", "missing.html")

    assert exc.value.code == 404
    assert "NoSuchKey" in exc.value.message


@pytest.mark.asyncio
async def test_error_status_wins_over_body_read_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, stream=FailingStream())

    with pytest.raises(FetchError) as exc:
        await _fetcher(handler).fetch("bucket", "flaky.html")

    assert exc.value.code == 503


@pytest.mark.asyncio
async def test_transport_failure_is_not_a_fetch_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("dns failure", request=request)

    with pytest.raises(httpx.TransportError):
        await _fetcher(handler).fetch("bucket", "page.html")


@pytest.mark.asyncio
async def test_stat_issues_head_and_returns_no_body() -> None:
    methods: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        methods.append(request.method)
        return _streamed(200, headers={"Content-Type": "text/html", "Content-Length": "42"})

    obj = await _fetcher(handler).stat("bucket", "dir/index.html")

    assert methods == ["HEAD"]
    assert obj.body is None
    assert obj.meta.content_type == "text/html"


@pytest.mark.asyncio
async def test_gzip_body_kept_for_clients_accepting_gzip() -> None:
    compressed = gzip.compress(b"hello world")

    def handler(request: httpx.Request) -> httpx.Response:
        return _streamed(200, compressed, headers={"Content-Encoding": "gzip"})

    obj = await _fetcher(handler).fetch("bucket", "a.txt", {"accept-encoding": "gzip"})

    assert obj.body == compressed
    assert obj.meta.content_encoding == "gzip"


@pytest.mark.asyncio
async def test_gzip_body_decoded_for_other_clients() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return _streamed(200, gzip.compress(b"hello world"), headers={"Content-Encoding": "gzip"})

    obj = await _fetcher(handler).fetch("bucket", "a.txt")

    assert obj.body == b"hello world"
    assert obj.meta.content_encoding is None


@pytest.mark.asyncio
async def test_object_names_are_quoted_in_url() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return _streamed(200)

    await _fetcher(handler).fetch("bucket", "my docs/read me.txt")

    assert seen[0].url.raw_path == b"/bucket/my%20docs/read%20me.txt"


@pytest.mark.asyncio
async def test_partial_content_status_is_kept() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return _streamed(206, b"01", headers={"Content-Range": "bytes 0-1/10"})

    obj = await _fetcher(handler).fetch("bucket", "data.bin", {"Range": "bytes=0-1"})

    assert obj.status_code == 206
    assert obj.meta.content_range == "bytes 0-1/10"
