from __future__ import annotations
"""Pydantic v2 schemas for Project and Asset models."""

from datetime import datetime

from pydantic import BaseModel, Field, model_validator

from app.models.asset import AssetType


class ProjectCreate(BaseModel):
    """Schema for creating a new project."""

    name: str = Field(..., min_length=1, max_length=255)


class ProjectRead(BaseModel):
    id: str
    name: str
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class AssetCreate(BaseModel):
    """Register a headshot (stored object or URL) or a voice id for a project."""

    asset_type: AssetType = AssetType.HEADSHOT
    name: str = Field(..., min_length=1, max_length=255)
    storage_key: str | None = None
    url: str | None = None
    content_type: str | None = None
    voice_id: str | None = None

    @model_validator(mode="after")
    def _has_reference(self):
        if self.asset_type is AssetType.VOICE:
            if not self.voice_id:
                raise ValueError("voice assets need a voice_id")
        elif not (self.storage_key or self.url):
            raise ValueError("storage_key or url is required")
        return self


class AssetRead(BaseModel):
    id: str
    project_id: str
    asset_type: str
    name: str
    storage_key: str | None = None
    url: str | None = None
    content_type: str | None = None
    voice_id: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class DefaultHeadshotUpdate(BaseModel):
    """Set (or clear, with null) the headshot used when a scene has none."""

    asset_id: str | None = None
