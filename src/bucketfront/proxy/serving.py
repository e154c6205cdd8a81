"""Rendering storage objects as HTTP responses."""

from __future__ import annotations

from http import HTTPStatus
from typing import Optional, Sequence

from fastapi import Request, Response
from fastapi.responses import PlainTextResponse

from ..storage.objects import StorageObject


ALLOW_METHODS = "GET, HEAD, OPTIONS"
EXPOSE_HEADERS = "Location, Etag, Content-Disposition"
STS_VALUE = "max-age=10886400; includeSubDomains; preload"


def valid_method(method: str) -> bool:
    return method in ("GET", "HEAD", "OPTIONS")


def cors_match(allowed: Sequence[str], origin: Optional[str]) -> Optional[str]:
    """Return the value for ``Access-Control-Allow-Origin``, or ``None`` when the origin is not allowed."""
    if not allowed:
        return None
    if allowed[0] == "*":
        return "*"
    if origin and origin in allowed:
        return origin
    return None


def render_object(
    request: Request,
    obj: StorageObject,
    cors_origins: Sequence[str],
    cors_max_age: Optional[str] = None,
) -> Response:
    """Build the response for ``obj``.

    Object metadata becomes response headers; redirect objects answer with
    ``Location``; the body is only sent for GET.
    """
    headers = obj.meta.response_headers()
    headers["allow"] = ALLOW_METHODS
    allow_origin = cors_match(cors_origins, request.headers.get("origin"))
    if allow_origin:
        headers["access-control-allow-origin"] = allow_origin
        if request.method == "OPTIONS":
            headers["access-control-allow-methods"] = ALLOW_METHODS
            headers["access-control-allow-headers"] = request.headers.get("access-control-request-headers", "")
            headers["access-control-expose-headers"] = EXPOSE_HEADERS
            if cors_max_age:
                headers["access-control-max-age"] = cors_max_age

    if obj.is_redirect and request.method != "OPTIONS":
        headers["location"] = obj.redirect_target or "/"
        return Response(status_code=obj.redirect_code, headers=headers)

    if request.method == "GET":
        return Response(content=obj.body or b"", status_code=obj.status_code, headers=headers)
    if request.method == "HEAD" and obj.body is not None:
        headers["content-length"] = str(obj.size)
    return Response(status_code=obj.status_code, headers=headers)


def serve_error(code: int, message: str = "") -> Response:
    if not message:
        try:
            message = HTTPStatus(code).phrase
        except ValueError:
            message = "Error"
    return PlainTextResponse(message, status_code=code)
