from __future__ import annotations
"""Sync Labs lip-sync provider.

  POST /generate        {model, input: [video, audio], options} → {"id": ...}
  GET  /generate/{id}   → {"status": ..., "outputUrl": ...}

Plan limits cap the audio length (see LIPSYNC_MAX_DURATION).
"""

import json
import logging
from typing import Any

import httpx

from app.config import get_settings
from app.services.errors import InvalidInput, ProviderRejected, TransientNetwork
from app.services.providers._http import client_scope, json_body, raise_for_provider, send
from app.services.providers.base import GenerationRequest, JobHandle, JobResult, JobState

logger = logging.getLogger(__name__)
settings = get_settings()

_STATUS_MAP = {
    "PENDING": JobState.PENDING,
    "QUEUED": JobState.PENDING,
    "PROCESSING": JobState.PENDING,
    "COMPLETED": JobState.DONE,
    "COMPLETE": JobState.DONE,
    "FAILED": JobState.FAILED,
    "ERROR": JobState.FAILED,
    "REJECTED": JobState.FAILED,
}


def estimate_audio_duration(character_count: int) -> float:
    """Seconds of speech for a script: ~150 words/min, ~5 chars/word."""
    return character_count / 5 / 150 * 60


def validate_audio_duration(character_count: int, max_seconds: int | None = None) -> float:
    """Return the estimate, or raise InvalidInput when the plan cannot take it."""
    max_seconds = max_seconds or settings.LIPSYNC_MAX_DURATION
    estimated = estimate_audio_duration(character_count)
    if estimated > max_seconds:
        raise InvalidInput(
            f"Audio too long: ~{estimated / 60:.1f} min estimated, "
            f"max {max_seconds / 60:.0f} min allowed by the lip-sync plan. "
            "Shorten the dialogue or raise the plan limit.",
            provider="synclabs",
            details={"estimated_seconds": estimated, "max_seconds": max_seconds},
        )
    return estimated


def _parse_submit_error(response: httpx.Response) -> None:
    """Sync Labs nests its real status in the body; surface the useful ones."""
    if response.is_success:
        return
    try:
        parsed = json.loads(response.text)
    except ValueError:
        parsed = {}
    inner = parsed.get("statusCode") if isinstance(parsed, dict) else None
    message = (parsed.get("message") or "") if isinstance(parsed, dict) else ""

    if inner == 402 or "audio exceeds duration" in message.lower():
        raise ProviderRejected(
            f"Audio exceeds the Sync Labs plan limit ({settings.LIPSYNC_MAX_DURATION // 60} min)",
            provider="synclabs",
            retryable=False,
            details={"body": response.text[:300]},
        )
    raise_for_provider(response, "synclabs")


def _output_url(data: dict[str, Any]) -> str | None:
    for key in ("outputUrl", "output_url", "videoUrl", "video_url"):
        if data.get(key):
            return data[key]
    for key in ("result", "output"):
        value = data.get(key)
        if isinstance(value, dict) and value.get("url"):
            return value["url"]
        if isinstance(value, list) and value and isinstance(value[0], dict):
            return value[0].get("url")
    return None


class SyncLabsLipsyncProvider:
    """Apply the scene audio to the generated clip."""

    name = "synclabs"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.SYNCLABS_API_KEY
        self.base_url = (base_url or settings.SYNCLABS_BASE_URL).rstrip("/")
        self.default_model = settings.LIPSYNC_MODEL
        self.http_client = http_client

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            raise ProviderRejected(
                "SYNCLABS_API_KEY is not configured", provider=self.name, retryable=False
            )
        return {"x-api-key": self.api_key, "Content-Type": "application/json"}

    async def submit(self, request: GenerationRequest) -> JobHandle:
        if not request.video_url or not request.audio_url:
            raise InvalidInput("Lip-sync needs both a video and an audio URL", provider=self.name)

        body: dict[str, Any] = {
            "model": request.model or self.default_model,
            "input": [
                {"type": "video", "url": request.video_url},
                {"type": "audio", "url": request.audio_url},
            ],
            "options": {"output_format": "mp4"},
        }
        if request.params.get("max_credits"):
            body["options"]["max_credits"] = request.params["max_credits"]
        if settings.WEBHOOK_BASE_URL:
            body["webhookUrl"] = f"{settings.WEBHOOK_BASE_URL.rstrip('/')}/api/webhooks/{self.name}"

        async with client_scope(self.http_client) as client:
            try:
                response = await client.post(
                    f"{self.base_url}/generate", json=body, headers=self._headers()
                )
            except httpx.TransportError as e:
                raise TransientNetwork(f"Sync Labs connection failed: {e}", provider=self.name) from e
        _parse_submit_error(response)

        data = json_body(response, self.name)
        job_id = data.get("id")
        if not job_id:
            raise ProviderRejected(
                f"Sync Labs returned no job id: {data}", provider=self.name, retryable=False
            )
        logger.info("Sync Labs job created: %s", job_id)
        return JobHandle(provider=self.name, job_id=str(job_id))

    async def fetch(self, job_id: str) -> JobResult:
        async with client_scope(self.http_client) as client:
            response = await send(
                client, "GET", f"{self.base_url}/generate/{job_id}", self.name,
                headers=self._headers(),
            )

        data = json_body(response, self.name)
        state = _STATUS_MAP.get(str(data.get("status", "")).upper(), JobState.PENDING)
        error = data.get("error") or data.get("message")

        if state is JobState.FAILED:
            return JobResult(state=state, error=str(error or "Lip-sync job failed"), raw=data)

        if state is JobState.DONE:
            url = _output_url(data)
            if not url:
                return JobResult(
                    state=JobState.FAILED,
                    error=f"Job completed but no video URL (fields: {sorted(data)})",
                    raw=data,
                )
            return JobResult(state=state, media_url=url, raw=data)

        return JobResult(state=state, raw=data)
