from __future__ import annotations
"""PiAPI unified task endpoint, shared by the Flux and Kling providers.

  POST {base}            → {"data": {"task_id": ...}}
  GET  {base}/{task_id}  → {"data": {"status": ..., "output": {...}}}
"""

import logging
from typing import Any

import httpx

from app.config import get_settings
from app.services.errors import InvalidInput, ProviderRejected
from app.services.providers._http import client_scope, json_body, send
from app.services.providers.base import JobState

logger = logging.getLogger(__name__)
settings = get_settings()

_PENDING = {"pending", "submitted", "queued", "staged", "processing", "running"}
_DONE = {"completed", "succeed", "success"}
_FAILED = {"failed", "error", "cancelled"}


def normalize_status(raw: str | None) -> JobState:
    status = (raw or "").lower()
    if status in _DONE:
        return JobState.DONE
    if status in _FAILED:
        return JobState.FAILED
    if status in _PENDING or not status:
        return JobState.PENDING
    logger.warning("PiAPI returned unknown task status %r, treating as pending", raw)
    return JobState.PENDING


def error_text(task: dict[str, Any]) -> str:
    raw = task.get("error") or task.get("message") or task.get("error_message")
    if isinstance(raw, dict):
        raw = raw.get("message") or str(raw)
    return str(raw) if raw else "unknown error"


class PiAPITaskClient:
    """Thin client over the PiAPI task API."""

    def __init__(
        self,
        provider: str,
        api_key: str | None = None,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.provider = provider
        self.api_key = api_key if api_key is not None else settings.PIAPI_API_KEY
        self.base_url = (base_url or settings.PIAPI_BASE_URL).rstrip("/")
        self.http_client = http_client

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            raise ProviderRejected(
                f"{self.provider}: PIAPI_API_KEY is not configured",
                provider=self.provider,
                retryable=False,
            )
        return {"X-API-Key": self.api_key, "Content-Type": "application/json"}

    async def create_task(self, model: str, task_type: str, task_input: dict[str, Any]) -> str:
        body = {"model": model, "task_type": task_type, "input": task_input}
        async with client_scope(self.http_client) as client:
            response = await send(
                client, "POST", self.base_url, self.provider,
                json=body, headers=self._headers(),
            )
        data = json_body(response, self.provider)
        task_id = (data.get("data") or {}).get("task_id")
        if not task_id:
            raise ProviderRejected(
                f"{self.provider} returned no task id: {data.get('message') or data}",
                provider=self.provider,
                retryable=False,
                details={"response": data},
            )
        logger.info("%s task created: %s (model=%s)", self.provider, task_id, model)
        return str(task_id)

    async def get_task(self, task_id: str) -> dict[str, Any]:
        if not task_id:
            raise InvalidInput("task id is required", provider=self.provider)
        async with client_scope(self.http_client) as client:
            response = await send(
                client, "GET", f"{self.base_url}/{task_id}", self.provider,
                headers=self._headers(),
            )
        data = json_body(response, self.provider)
        task = data.get("data")
        if not isinstance(task, dict):
            raise ProviderRejected(
                f"{self.provider} task {task_id} lookup failed: {data.get('message') or data}",
                provider=self.provider,
                retryable=False,
            )
        return task
