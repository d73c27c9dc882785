"""Kling image-to-video provider (via PiAPI's unified task endpoint).

Supports:
- 5s / 10s clips, std or pro mode
- A single start frame passed as a signed URL
"""

from __future__ import annotations

import logging

import httpx

from app.config import get_settings
from app.services.errors import InvalidInput
from app.services.providers.base import GenerationRequest, JobHandle, JobResult, JobState
from app.services.providers.piapi import PiAPITaskClient, error_text, normalize_status

logger = logging.getLogger(__name__)
settings = get_settings()

_NEGATIVE_PROMPT = "blurry, distorted, low quality, static, frozen"


class KlingVideoProvider:
    """Animate the scene headshot into a short talking-head clip."""

    name = "kling"
    default_model = "kling"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._tasks = PiAPITaskClient(self.name, api_key, base_url, http_client)

    async def submit(self, request: GenerationRequest) -> JobHandle:
        if not request.image_url:
            raise InvalidInput("Video generation needs a source image URL", provider=self.name)

        duration = int(request.params.get("duration", settings.VIDEO_DURATION))
        if duration not in (5, 10):
            raise InvalidInput(f"Kling supports 5s or 10s clips, got {duration}s", provider=self.name)

        task_id = await self._tasks.create_task(
            request.model or self.default_model,
            "video_generation",
            {
                "image_url": request.image_url,
                "prompt": request.prompt or "",
                "negative_prompt": request.params.get("negative_prompt", _NEGATIVE_PROMPT),
                "cfg_scale": 0.5,
                "duration": duration,
                "aspect_ratio": request.params.get("aspect_ratio", "16:9"),
                "mode": request.params.get("mode", settings.VIDEO_MODE),
            },
        )
        return JobHandle(provider=self.name, job_id=task_id)

    async def fetch(self, job_id: str) -> JobResult:
        task = await self._tasks.get_task(job_id)
        state = normalize_status(task.get("status"))

        if state is JobState.FAILED:
            return JobResult(state=state, error=error_text(task), raw=task)

        if state is JobState.DONE:
            output = task.get("output") or {}
            videos = output.get("videos") or [{}]
            video_url = (
                output.get("video_url")
                or (videos[0] or {}).get("url")
                or output.get("video")
                or (task.get("result") or {}).get("video_url")
            )
            if not video_url:
                return JobResult(
                    state=JobState.FAILED,
                    error="Kling task succeeded but no video URL",
                    raw=task,
                )
            return JobResult(state=state, media_url=video_url, raw=task)

        logger.debug("Kling task %s: %s", job_id, task.get("status"))
        return JobResult(state=state, progress=task.get("progress"), raw=task)
