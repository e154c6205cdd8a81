"""Uvicorn entrypoint for the bucketfront proxy."""

from __future__ import annotations

from .app import create_app

app = create_app()
