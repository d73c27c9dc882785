from __future__ import annotations
"""ElevenLabs text-to-speech (synchronous: the response body is the audio)."""

import logging

import httpx

from app.config import get_settings
from app.services.errors import InvalidInput, ProviderRejected
from app.services.providers._http import client_scope, send
from app.services.providers.base import SpeechResult

logger = logging.getLogger(__name__)
settings = get_settings()

VOICE_SETTINGS = {
    "stability": 0.5,
    "similarity_boost": 0.75,
    "style": 0.0,
    "use_speaker_boost": True,
}


class ElevenLabsSpeechProvider:
    name = "elevenlabs"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.ELEVENLABS_API_KEY
        self.base_url = (base_url or settings.ELEVENLABS_BASE_URL).rstrip("/")
        self.default_model = settings.SPEECH_MODEL
        self.http_client = http_client

    async def synthesize(self, text: str, voice_id: str, model: str | None = None) -> SpeechResult:
        if not text or not text.strip():
            raise InvalidInput("Speech synthesis needs dialogue text", provider=self.name)
        if not voice_id:
            raise InvalidInput("Speech synthesis needs a voice id", provider=self.name)
        if not self.api_key:
            raise ProviderRejected(
                "ELEVENLABS_API_KEY is not configured", provider=self.name, retryable=False
            )

        async with client_scope(self.http_client, timeout=120.0) as client:
            response = await send(
                client, "POST", f"{self.base_url}/text-to-speech/{voice_id}", self.name,
                json={
                    "text": text,
                    "model_id": model or self.default_model,
                    "voice_settings": VOICE_SETTINGS,
                },
                headers={
                    "xi-api-key": self.api_key,
                    "Content-Type": "application/json",
                    "Accept": "audio/mpeg",
                },
            )

        logger.info("Synthesized %d chars with voice %s", len(text), voice_id)
        return SpeechResult(
            audio=response.content,
            content_type=response.headers.get("content-type", "audio/mpeg").split(";")[0],
            character_count=len(text),
        )
