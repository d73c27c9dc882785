"""Redis Pub/Sub bridge for scene status notifications.

Workflow runs (Celery workers) publish to a per-project channel; the
FastAPI WebSocket handler subscribes and relays to connected clients.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import redis
import redis.asyncio as aioredis

from app.config import get_settings

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "scenecast:ws:"

# ──────── Sync connection pool (used by Celery workers and the scene lock) ────────

_sync_pool: redis.ConnectionPool | None = None


def _get_sync_pool() -> redis.ConnectionPool:
    """Lazy-init a module-level sync Redis ConnectionPool."""
    global _sync_pool
    if _sync_pool is None:
        settings = get_settings()
        _sync_pool = redis.ConnectionPool.from_url(settings.REDIS_URL)
    return _sync_pool


def get_sync_redis() -> redis.Redis:
    return redis.Redis(connection_pool=_get_sync_pool())


# ──────── Publisher (sync) ────────

def publish_scene_update(
    project_id: str,
    scene_id: str,
    status: str,
    message: str | None = None,
) -> None:
    """Publish a scene status change; delivery is best-effort."""
    payload: dict[str, Any] = {
        "type": "scene_update",
        "scene_id": scene_id,
        "status": status,
    }
    if message:
        payload["message"] = message
    _publish_sync(project_id, payload)


def _publish_sync(project_id: str, message: dict[str, Any]) -> None:
    try:
        channel = f"{CHANNEL_PREFIX}{project_id}"
        get_sync_redis().publish(channel, json.dumps(message))
    except redis.RedisError:
        # Notifications never fail a workflow run
        logger.warning("Failed to publish WS notification for project %s", project_id, exc_info=True)


# ──────── Subscriber (used by FastAPI, async) ────────

_async_client: aioredis.Redis | None = None


def _get_async_client() -> aioredis.Redis:
    """Lazy-init a module-level async Redis client (singleton)."""
    global _async_client
    if _async_client is None:
        settings = get_settings()
        _async_client = aioredis.from_url(settings.REDIS_URL)
    return _async_client


async def subscribe_project(project_id: str) -> aioredis.client.PubSub:
    """Subscribe to a project's channel. Caller closes the pubsub, not the client."""
    pubsub = _get_async_client().pubsub()
    await pubsub.subscribe(f"{CHANNEL_PREFIX}{project_id}")
    return pubsub


async def listen_pubsub(pubsub: aioredis.client.PubSub):
    """Async generator that yields parsed messages from a PubSub subscription."""
    async for raw_message in pubsub.listen():
        if raw_message["type"] == "message":
            try:
                yield json.loads(raw_message["data"])
            except (json.JSONDecodeError, TypeError):
                continue
