"""Shared data models for bucketfront services."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ChangeNotification(BaseModel):
    """Object change notification posted by the storage service.

    Only the bucket and object name matter for cache invalidation.
    """

    model_config = ConfigDict(extra="ignore")

    bucket: str = Field(min_length=1)
    name: str = Field(min_length=1)
    generation: Optional[str] = None
