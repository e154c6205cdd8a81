"""Caching proxy serving object-storage buckets over HTTP."""

__version__ = "0.1.0"
