"""Objects retrieved from the storage backend and the errors it reports."""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Mapping, Optional

# GCS custom metadata marking an object as a redirect
GCS_META_REDIRECT = "x-goog-meta-redirect"
GCS_META_REDIRECT_CODE = "x-goog-meta-redirect-code"

REDIRECT_TARGET = "redirect-target"
REDIRECT_CODE = "redirect-code"
DEFAULT_REDIRECT_CODE = 301


@dataclass(frozen=True, slots=True)
class ObjectMeta:
    """Whitelisted object headers, keyed by lower-cased header name on the wire."""

    cache_control: Optional[str] = None
    content_disposition: Optional[str] = None
    content_encoding: Optional[str] = None
    content_range: Optional[str] = None
    content_type: Optional[str] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    access_control_allow_origin: Optional[str] = None
    access_control_expose_headers: Optional[str] = None
    redirect_target: Optional[str] = None
    redirect_code: Optional[str] = None

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> "ObjectMeta":
        """Project ``headers`` onto the whitelist.

        Accepts both backend response headers, where redirects arrive as
        ``x-goog-meta-redirect*`` custom metadata, and the synthetic
        ``redirect-*`` keys produced by :meth:`as_dict`.
        """
        lowered = {str(k).lower(): v for k, v in headers.items()}
        lowered.setdefault(REDIRECT_TARGET, lowered.get(GCS_META_REDIRECT))
        lowered.setdefault(REDIRECT_CODE, lowered.get(GCS_META_REDIRECT_CODE))
        values = {}
        for field in fields(cls):
            value = lowered.get(_header_name(field.name))
            if value:
                values[field.name] = str(value)
        return cls(**values)

    def as_dict(self) -> dict[str, str]:
        return {_header_name(k): v for k, v in asdict(self).items() if v is not None}

    def response_headers(self) -> dict[str, str]:
        """Headers to copy onto a client response; synthetic keys are excluded."""
        headers = self.as_dict()
        headers.pop(REDIRECT_TARGET, None)
        headers.pop(REDIRECT_CODE, None)
        return headers


def _header_name(field_name: str) -> str:
    return field_name.replace("_", "-")


@dataclass(frozen=True, slots=True)
class StorageObject:
    """A resource read from the backend, or a synthesized redirect.

    ``body`` is ``None`` for stat results. ``status_code`` is the backend's
    success status, e.g. 206 for ranged reads or 304 for revalidations.
    """

    meta: ObjectMeta
    body: Optional[bytes] = None
    status_code: int = 200

    @classmethod
    def redirect(cls, target: str, code: Optional[int] = None) -> "StorageObject":
        meta = ObjectMeta(redirect_target=target, redirect_code=str(code) if code else None)
        return cls(meta=meta, body=b"")

    @property
    def redirect_target(self) -> Optional[str]:
        return self.meta.redirect_target

    @property
    def is_redirect(self) -> bool:
        return bool(self.meta.redirect_target)

    @property
    def redirect_code(self) -> int:
        try:
            return int(self.meta.redirect_code or "")
        except ValueError:
            return DEFAULT_REDIRECT_CODE

    @property
    def size(self) -> int:
        return len(self.body) if self.body is not None else 0


class FetchError(Exception):
    """The storage backend answered with an error status."""

    def __init__(self, code: int, message: str = "") -> None:
        super().__init__(code, message)
        self.code = code
        self.message = message

    @property
    def not_found(self) -> bool:
        # GCS may answer 403 for objects that do not exist
        return self.code in (403, 404)

    def __str__(self) -> str:
        return f"FetchError {self.code}: {self.message}"
