"""Pydantic schemas for blob endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field


class BlobDownloadUrlOut(BaseModel):
    """Download URL for a stored blob."""

    digest: str
    location: str = Field(description="Storage key of the blob.")
    url: str = Field(description="Time-limited URL that reads the blob.")
