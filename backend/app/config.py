from __future__ import annotations
"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from urllib.parse import quote_plus

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """SceneCast application settings.

    Loaded from environment variables or .env file.
    """

    # --- Application ---
    APP_NAME: str = "SceneCast"
    DEBUG: bool = False

    # --- Database (MySQL 8.0+) ---
    DB_HOST: str = "localhost"
    DB_PORT: int = 3306
    DB_USER: str = "root"
    DB_PASSWORD: str = ""
    DB_NAME: str = "scenecast"
    DB_URL: str = ""  # full override, e.g. sqlite+aiosqlite:///./scenecast.db

    @property
    def DATABASE_URL(self) -> str:
        """Async connection string; MySQL via asyncmy unless DB_URL is set."""
        if self.DB_URL:
            return self.DB_URL
        encoded_password = quote_plus(self.DB_PASSWORD)
        return (
            f"mysql+asyncmy://{self.DB_USER}:{encoded_password}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
            "?charset=utf8mb4"
        )

    # --- Redis (Celery broker, scene locks, Pub/Sub) ---
    REDIS_URL: str = "redis://localhost:6379/0"

    # --- Object storage (Cloudflare R2 / S3) ---
    R2_ACCOUNT_ID: str = ""
    R2_ACCESS_KEY_ID: str = ""
    R2_SECRET_ACCESS_KEY: str = ""
    R2_BUCKET_NAME: str = "scenecast"
    R2_PUBLIC_URL: str = ""
    R2_ENDPOINT_URL: str = ""  # overrides the account-derived R2 endpoint
    SIGNED_URL_TTL: int = 3600

    @property
    def STORAGE_ENDPOINT(self) -> str:
        if self.R2_ENDPOINT_URL:
            return self.R2_ENDPOINT_URL
        return f"https://{self.R2_ACCOUNT_ID}.r2.cloudflarestorage.com"

    # --- Provider credentials ---
    PIAPI_API_KEY: str = ""
    PIAPI_BASE_URL: str = "https://api.piapi.ai/api/v1/task"
    SYNCLABS_API_KEY: str = ""
    SYNCLABS_BASE_URL: str = "https://api.sync.so/v2"
    ELEVENLABS_API_KEY: str = ""
    ELEVENLABS_BASE_URL: str = "https://api.elevenlabs.io/v1"

    # --- Provider selection (one implementation per capability) ---
    IMAGE_PROVIDER: str = "piapi-flux"
    VIDEO_PROVIDER: str = "kling"
    LIPSYNC_PROVIDER: str = "synclabs"
    SPEECH_PROVIDER: str = "elevenlabs"

    # --- Default generation parameters ---
    DEFAULT_VOICE_ID: str = ""
    IMAGE_MODEL: str = "Qubico/flux1-schnell"
    VIDEO_MODE: str = "pro"
    VIDEO_DURATION: int = 5
    LIPSYNC_MODEL: str = "lipsync-2"
    SPEECH_MODEL: str = "eleven_multilingual_v2"
    LIPSYNC_MAX_DURATION: int = 300  # seconds allowed by the Sync Labs plan

    # --- Stage policy ---
    STAGE_MAX_ATTEMPTS: int = 3
    STAGE_BACKOFF_BASE: float = 15.0
    STAGE_BACKOFF_CAP: float = 300.0
    TIMEOUT_IS_RETRYABLE: bool = True
    RETRY_QUOTA_REJECTIONS: bool = True
    IMAGE_MAX_WAIT: int = 120
    IMAGE_POLL_INTERVAL: int = 2
    VIDEO_MAX_WAIT: int = 1200
    VIDEO_POLL_INTERVAL: int = 30
    LIPSYNC_MAX_WAIT: int = 600
    LIPSYNC_POLL_INTERVAL: int = 15
    POLL_INTERVAL_CAP: int = 120

    # --- Workflow runtime ---
    # Held for one run; extended while the run is still going
    SCENE_LOCK_TTL: int = 900
    # Queued-run marker outlives its due time by this much
    SCHEDULE_GRACE_SECONDS: int = 300
    BUSY_RETRY_DELAY: int = 10
    WEBHOOK_BASE_URL: str = ""  # public base URL providers call back on
    STALL_THRESHOLD_MINUTES: int = 30

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings singleton."""
    return Settings()
