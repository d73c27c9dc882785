from __future__ import annotations
"""Pydantic v2 schemas for scenes, their Generation Log and admin actions."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from app.models.scene import SceneStatus


class SceneCreate(BaseModel):
    """Schema for creating a single scene."""

    sequence_order: int = 0
    dialogue: str | None = None
    voice_id: str | None = None
    environment: str | None = Field(None, max_length=255)
    wardrobe: str | None = Field(None, max_length=255)
    mood_lighting: str | None = Field(None, max_length=255)
    movement: str | None = Field(None, max_length=255)
    camera: str | None = Field(None, max_length=255)
    headshot_id: str | None = None
    # Optional pre-supplied audio (skips speech synthesis)
    audio_key: str | None = None
    audio_url: str | None = None
    image_provider: str | None = None
    image_model: str | None = None
    video_provider: str | None = None
    video_model: str | None = None
    lipsync_provider: str | None = None
    lipsync_model: str | None = None


class SceneRead(BaseModel):
    """Schema for reading a scene."""

    id: str
    project_id: str
    sequence_order: int
    dialogue: str | None = None
    voice_id: str | None = None
    environment: str | None = None
    wardrobe: str | None = None
    mood_lighting: str | None = None
    movement: str | None = None
    camera: str | None = None
    headshot_id: str | None = None
    audio_url: str | None = None
    audio_duration: float | None = None
    image_url: str | None = None
    video_url: str | None = None
    lipsync_url: str | None = None
    final_video_url: str | None = None
    status: str
    failed_stage: str | None = None
    failure_reason: str | None = None
    cancel_requested: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class GenerationLogRead(BaseModel):
    id: int
    scene_id: str
    step: str
    level: str
    event: str | None = None
    message: str
    provider: str | None = None
    job_id: str | None = None
    attempt: int | None = None
    error_code: str | None = None
    details: dict[str, Any] | None = None
    duration_ms: int | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class SceneStatusRead(BaseModel):
    """Scene status plus the most recent log entries, for polling UIs."""

    scene: SceneRead
    recent_logs: list[GenerationLogRead]


class SceneActionResponse(BaseModel):
    scene_id: str
    status: str
    message: str


class SceneResetRequest(BaseModel):
    to_status: SceneStatus | None = None


class SceneFailRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class RecoverRequest(BaseModel):
    """Recover a stuck stage from a provider result obtained out of band."""

    output_url: str = Field(..., min_length=1)
    job_id: str | None = None
    provider: str | None = None
    stage: SceneStatus | None = None


class CheckJobRequest(BaseModel):
    stage: SceneStatus | None = None


class RecoveryRead(BaseModel):
    scene_id: str
    status: str
    recovered_stage: str | None = None
    url: str | None = None
    job_id: str | None = None
    job_state: str | None = None
    message: str | None = None

    model_config = {"from_attributes": True}


class WebhookAck(BaseModel):
    received: bool
    scene_id: str | None = None
