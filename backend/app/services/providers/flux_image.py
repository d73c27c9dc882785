from __future__ import annotations
"""Flux Schnell text-to-image via PiAPI."""

import logging

import httpx

from app.config import get_settings
from app.services.errors import InvalidInput
from app.services.providers.base import GenerationRequest, JobHandle, JobResult, JobState
from app.services.providers.piapi import PiAPITaskClient, error_text, normalize_status

logger = logging.getLogger(__name__)
settings = get_settings()

_DIMENSIONS = {
    "1:1": (1024, 1024),
    "16:9": (1344, 768),
    "9:16": (768, 1344),
    "4:3": (1152, 896),
    "3:4": (896, 1152),
}


class FluxImageProvider:
    """Portrait generation for scenes with no uploaded headshot."""

    name = "piapi-flux"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.default_model = settings.IMAGE_MODEL
        self._tasks = PiAPITaskClient(self.name, api_key, base_url, http_client)

    async def submit(self, request: GenerationRequest) -> JobHandle:
        if not request.prompt:
            raise InvalidInput("Image generation needs a prompt", provider=self.name)

        aspect_ratio = request.params.get("aspect_ratio", "16:9")
        width, height = _DIMENSIONS.get(aspect_ratio, _DIMENSIONS["16:9"])
        task_id = await self._tasks.create_task(
            request.model or self.default_model,
            "txt2img",
            {
                "prompt": request.prompt,
                "width": width,
                "height": height,
                "num_inference_steps": 4,
            },
        )
        return JobHandle(provider=self.name, job_id=task_id)

    async def fetch(self, job_id: str) -> JobResult:
        task = await self._tasks.get_task(job_id)
        state = normalize_status(task.get("status"))
        output = task.get("output") or {}

        if state is JobState.FAILED:
            return JobResult(state=state, error=error_text(task), raw=task)

        if state is JobState.DONE:
            images = output.get("images") or []
            first = images[0] if images else None
            url = output.get("image_url") or (
                first.get("url") if isinstance(first, dict) else first
            )
            if not url:
                return JobResult(
                    state=JobState.FAILED,
                    error="Task completed without an image URL",
                    raw=task,
                )
            return JobResult(state=state, media_url=url, raw=task)

        return JobResult(state=state, progress=task.get("progress"), raw=task)
