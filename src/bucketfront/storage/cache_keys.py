"""Cache keys for stored objects and the rules deciding when a cache may be used."""

from __future__ import annotations

import posixpath
from typing import Mapping, Optional

# Every suffix a cache key may carry. Invalidation purges all of them.
GZIP_SUFFIX = ":gzip"
VARIANT_SUFFIXES: tuple[str, ...] = (GZIP_SUFFIX,)

_UNCACHEABLE_HEADERS = ("range", "origin")


def join_object_path(bucket: str, name: str) -> str:
    """Join bucket and object name path-style, dropping empty and dot segments.

    The name is normalized on its own first so that leading slashes or
    ``..`` segments cannot leave the bucket.
    """
    clean = posixpath.normpath(posixpath.join("/", name)).lstrip("/")
    return posixpath.join(bucket, clean) if clean else bucket


def accepts_gzip(headers: Optional[Mapping[str, str]]) -> bool:
    """Report whether an ``Accept-Encoding`` header admits gzip."""
    value = _header(headers, "accept-encoding")
    if not value:
        return False
    gzip_q: Optional[float] = None
    any_q: Optional[float] = None
    for item in value.split(","):
        coding, _, params = item.strip().partition(";")
        coding = coding.strip().lower()
        if coding in ("gzip", "x-gzip"):
            gzip_q = max(gzip_q or 0.0, _qvalue(params))
        elif coding == "*":
            any_q = _qvalue(params)
    # an explicit gzip entry overrides the wildcard
    if gzip_q is not None:
        return gzip_q > 0
    return bool(any_q)


def _qvalue(params: str) -> float:
    for param in params.split(";"):
        key, _, value = param.strip().partition("=")
        if key.strip().lower() == "q":
            try:
                return float(value)
            except ValueError:
                return 0.0
    return 1.0


def _header(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    if not headers:
        return None
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


class CacheKeyPolicy:
    """Derives cache keys from the backend base URL, bucket and object name."""

    def __init__(self, base: str) -> None:
        self._base = base.rstrip("/")

    def base_key(self, bucket: str, name: str) -> str:
        return f"{self._base}/{join_object_path(bucket, name)}"

    def cache_key(self, bucket: str, name: str, headers: Optional[Mapping[str, str]] = None) -> str:
        key = self.base_key(bucket, name)
        if accepts_gzip(headers):
            key += GZIP_SUFFIX
        return key

    def variant_keys(self, bucket: str, name: str) -> list[str]:
        key = self.base_key(bucket, name)
        return [key] + [key + suffix for suffix in VARIANT_SUFFIXES]

    @staticmethod
    def cacheable(headers: Optional[Mapping[str, str]]) -> bool:
        """Conditional, ranged and cross-origin requests always go to the backend."""
        if not headers:
            return True
        for key in headers.keys():
            lowered = key.lower()
            if lowered in _UNCACHEABLE_HEADERS or lowered.startswith("if-"):
                return False
        return True
