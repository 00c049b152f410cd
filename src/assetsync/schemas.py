from __future__ import annotations

"""Pydantic schemas for bundle metadata and the state API.

AssetMetadata allows extra fields: descriptors carry arbitrary marketplace
attributes that are uploaded untouched.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


class AssetMetadata(BaseModel):
    image: str = Field(..., description="File name of the payload, a sibling of metadata.json")
    name: Optional[str] = Field(default=None, description="Display name")
    description: Optional[str] = Field(default=None, description="Display description")

    model_config = {"extra": "allow"}

    @field_validator("image")
    @classmethod
    def _plain_file_name(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("image must be a non-empty file name")
        if "/" in v or "\\" in v or v in {".", ".."}:
            raise ValueError("image must name a file in the bundle directory")
        return v


class AssetView(BaseModel):
    """API view of one asset within a namespace."""

    asset_id: str
    published: bool
    uri: Optional[str] = None
    gateway_url: Optional[str] = None
    has_bundle: bool = False
    record: Optional[Dict[str, Any]] = None
