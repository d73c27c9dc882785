from __future__ import annotations
"""Provider capability contracts shared by every third-party client.

Each capability (image, video, lip-sync) is a submit/fetch pair:

  submit(request) → JobHandle          create the remote job
  fetch(job_id)   → JobResult          PENDING | DONE(media_url) | FAILED(reason)

Speech synthesis returns the audio directly.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from app.services.errors import ProviderTimeout

logger = logging.getLogger(__name__)


class JobState(str, enum.Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class JobHandle:
    """Identifier of a remote job, as returned by ``submit``."""
    provider: str
    job_id: str


@dataclass
class JobResult:
    """Normalized result of ``fetch``."""
    state: JobState
    media_url: str | None = None
    error: str | None = None
    progress: int | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_pending(self) -> bool:
        return self.state is JobState.PENDING


@dataclass
class GenerationRequest:
    """Everything a provider may need to start a job for one scene."""
    scene_id: str
    project_id: str
    prompt: str | None = None
    image_url: str | None = None
    video_url: str | None = None
    audio_url: str | None = None
    model: str | None = None
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class SpeechResult:
    audio: bytes
    content_type: str
    character_count: int


@runtime_checkable
class ImageProvider(Protocol):
    name: str
    default_model: str

    async def submit(self, request: GenerationRequest) -> JobHandle: ...

    async def fetch(self, job_id: str) -> JobResult: ...


@runtime_checkable
class VideoProvider(Protocol):
    name: str
    default_model: str

    async def submit(self, request: GenerationRequest) -> JobHandle: ...

    async def fetch(self, job_id: str) -> JobResult: ...


@runtime_checkable
class LipsyncProvider(Protocol):
    name: str
    default_model: str

    async def submit(self, request: GenerationRequest) -> JobHandle: ...

    async def fetch(self, job_id: str) -> JobResult: ...


@runtime_checkable
class SpeechProvider(Protocol):
    name: str
    default_model: str

    async def synthesize(self, text: str, voice_id: str, model: str | None = None) -> SpeechResult: ...


async def await_result(
    provider: ImageProvider | VideoProvider | LipsyncProvider,
    handle: JobHandle,
    *,
    max_attempts: int = 40,
    interval_seconds: float = 15.0,
    backoff: float = 1.0,
    max_interval: float = 120.0,
) -> JobResult:
    """Blocking-style poll loop with bounded attempts and growing interval.

    For scripts and admin tools; the workflow itself never sleeps on a job and
    re-enqueues a poll instead. Raises ProviderTimeout when attempts run out.
    """
    delay = interval_seconds
    for attempt in range(1, max_attempts + 1):
        result = await provider.fetch(handle.job_id)
        if not result.is_pending:
            return result
        logger.debug(
            "%s job %s still pending (poll %d/%d)",
            handle.provider, handle.job_id, attempt, max_attempts,
        )
        if attempt < max_attempts:
            await asyncio.sleep(delay)
            delay = min(delay * backoff, max_interval)

    raise ProviderTimeout(
        f"{handle.provider} job {handle.job_id} still pending after {max_attempts} polls",
        provider=handle.provider,
    )


def extract_job_id(payload: dict[str, Any]) -> str | None:
    """Pull the job identifier out of a provider callback body."""
    for key in ("id", "job_id", "jobId", "task_id", "taskId"):
        value = payload.get(key)
        if value:
            return str(value)
    data = payload.get("data")
    if isinstance(data, dict):
        return extract_job_id(data)
    return None
