"""Object storage access: fetching, caching and path resolution."""

from .objects import FetchError, ObjectMeta, StorageObject
from .resolver import Storage

__all__ = ["FetchError", "ObjectMeta", "Storage", "StorageObject"]
