"""Provider implementations, one per third-party service, selected by name.

Each capability maps configured names to factories:
  image   → piapi-flux
  video   → kling
  lipsync → synclabs
  speech  → elevenlabs
"""

from __future__ import annotations

from typing import Any, Callable

from app.config import get_settings
from app.services.errors import InvalidInput
from app.services.providers.base import (
    GenerationRequest,
    ImageProvider,
    JobHandle,
    JobResult,
    JobState,
    LipsyncProvider,
    SpeechProvider,
    SpeechResult,
    VideoProvider,
    await_result,
    extract_job_id,
)
from app.services.providers.elevenlabs import ElevenLabsSpeechProvider
from app.services.providers.flux_image import FluxImageProvider
from app.services.providers.kling_video import KlingVideoProvider
from app.services.providers.synclabs import SyncLabsLipsyncProvider

IMAGE = "image"
VIDEO = "video"
LIPSYNC = "lipsync"
SPEECH = "speech"

PROVIDER_FACTORIES: dict[str, dict[str, Callable[[], Any]]] = {
    IMAGE: {FluxImageProvider.name: FluxImageProvider},
    VIDEO: {KlingVideoProvider.name: KlingVideoProvider},
    LIPSYNC: {SyncLabsLipsyncProvider.name: SyncLabsLipsyncProvider},
    SPEECH: {ElevenLabsSpeechProvider.name: ElevenLabsSpeechProvider},
}

_CONFIG_KEYS = {
    IMAGE: "IMAGE_PROVIDER",
    VIDEO: "VIDEO_PROVIDER",
    LIPSYNC: "LIPSYNC_PROVIDER",
    SPEECH: "SPEECH_PROVIDER",
}


def configured_name(capability: str) -> str:
    return getattr(get_settings(), _CONFIG_KEYS[capability])


def build_provider(capability: str, name: str | None = None) -> Any:
    """Instantiate the provider for ``capability`` (configured default if no name)."""
    name = name or configured_name(capability)
    try:
        factory = PROVIDER_FACTORIES[capability][name]
    except KeyError:
        raise InvalidInput(f"Unknown {capability} provider: {name}") from None
    return factory()


class ProviderSet:
    """Provider instances for one workflow run, created lazily by name."""

    def __init__(self, overrides: dict[str, Any] | None = None) -> None:
        self._instances: dict[tuple[str, str], Any] = {}
        self._overrides = overrides or {}

    def get(self, capability: str, name: str | None = None) -> Any:
        override = self._overrides.get(capability)
        if override is not None and (name is None or name == override.name):
            return override
        name = name or configured_name(capability)
        key = (capability, name)
        if key not in self._instances:
            self._instances[key] = build_provider(capability, name)
        return self._instances[key]


__all__ = [
    "IMAGE",
    "VIDEO",
    "LIPSYNC",
    "SPEECH",
    "PROVIDER_FACTORIES",
    "ProviderSet",
    "build_provider",
    "configured_name",
    "GenerationRequest",
    "ImageProvider",
    "VideoProvider",
    "LipsyncProvider",
    "SpeechProvider",
    "SpeechResult",
    "JobHandle",
    "JobResult",
    "JobState",
    "await_result",
    "extract_job_id",
]
