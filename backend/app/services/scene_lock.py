from __future__ import annotations
"""Per-scene coordination backed by Redis.

The scene lock is SET NX EX with a random token; release only deletes the key
when the token still matches, so an expired holder cannot drop a newer lock.
While a block holds the lock, a background task keeps extending its TTL.

The run schedule keeps at most one queued workflow run per scene. Each
scheduled run carries a token; a run whose token is no longer the scene's
marker was superseded by an earlier one and is dropped.
"""

import asyncio
import contextlib
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Protocol

import redis

from app.config import get_settings
from app.services.errors import ConcurrencyConflict
from app.services.pubsub import get_sync_redis

logger = logging.getLogger(__name__)
settings = get_settings()

LOCK_PREFIX = "scenecast:scene-lock:"
SCHEDULE_PREFIX = "scenecast:next-run:"

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

_REFRESH_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("expire", KEYS[1], ARGV[2])
end
return 0
"""

# Marker value is "<due epoch>|<token>"; an earlier-or-equal due run wins
_CLAIM_SCRIPT = """
local current = redis.call("get", KEYS[1])
if current then
    local due = tonumber(string.match(current, "^([^|]+)|"))
    if due and due <= tonumber(ARGV[1]) then
        return 0
    end
end
redis.call("set", KEYS[1], ARGV[1] .. "|" .. ARGV[2], "EX", ARGV[3])
return 1
"""

_CONSUME_SCRIPT = """
local current = redis.call("get", KEYS[1])
if current and string.match(current, "|(.*)$") == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class SceneLock(Protocol):
    ttl_seconds: float

    def acquire(self, scene_id: str) -> str | None: ...

    def refresh(self, scene_id: str, token: str) -> bool: ...

    def release(self, scene_id: str, token: str) -> None: ...


class RedisSceneLock:
    def __init__(self, client: redis.Redis | None = None, ttl_seconds: int | None = None) -> None:
        self._client = client
        self.ttl_seconds = ttl_seconds or settings.SCENE_LOCK_TTL

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = get_sync_redis()
        return self._client

    def acquire(self, scene_id: str) -> str | None:
        """Return a token when the lock was taken, None when someone holds it."""
        token = uuid.uuid4().hex
        if self.client.set(f"{LOCK_PREFIX}{scene_id}", token, nx=True, ex=self.ttl_seconds):
            return token
        return None

    def refresh(self, scene_id: str, token: str) -> bool:
        """Push the TTL out again; False when the lock is no longer ours."""
        try:
            return bool(
                self.client.eval(_REFRESH_SCRIPT, 1, f"{LOCK_PREFIX}{scene_id}", token, self.ttl_seconds)
            )
        except redis.RedisError:
            logger.warning("Failed to extend lock for scene %s", scene_id, exc_info=True)
            return True

    def release(self, scene_id: str, token: str) -> None:
        try:
            self.client.eval(_RELEASE_SCRIPT, 1, f"{LOCK_PREFIX}{scene_id}", token)
        except redis.RedisError:
            # The TTL frees it eventually
            logger.warning("Failed to release lock for scene %s", scene_id, exc_info=True)


async def _keep_alive(lock: SceneLock, scene_id: str, token: str) -> None:
    interval = max(lock.ttl_seconds / 3, 0.01)
    while True:
        await asyncio.sleep(interval)
        if not await asyncio.to_thread(lock.refresh, scene_id, token):
            logger.warning("Lost the lock on scene %s while holding it", scene_id)
            return


@asynccontextmanager
async def hold_scene(lock: SceneLock, scene_id: str) -> AsyncIterator[str]:
    """Hold the scene lock for the block; ConcurrencyConflict if it is taken.

    Redis calls run in a worker thread so an API event loop is never blocked,
    and the TTL is extended for as long as the block runs (large relocations
    can outlast ``SCENE_LOCK_TTL``).
    """
    token = await asyncio.to_thread(lock.acquire, scene_id)
    if token is None:
        raise ConcurrencyConflict(f"Scene {scene_id} is already being processed")
    keeper = asyncio.create_task(_keep_alive(lock, scene_id, token))
    try:
        yield token
    finally:
        keeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await keeper
        await asyncio.to_thread(lock.release, scene_id, token)


class RunSchedule:
    """At most one queued workflow run per scene, the earliest one."""

    def __init__(self, client: redis.Redis | None = None, grace_seconds: int | None = None) -> None:
        self._client = client
        self.grace_seconds = grace_seconds or settings.SCHEDULE_GRACE_SECONDS

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = get_sync_redis()
        return self._client

    def claim(self, scene_id: str, delay: float, now: float | None = None) -> str | None:
        """Reserve the next run ``delay`` seconds out.

        Returns the run's token, or None when a run at least as early is
        already queued. The marker expires ``grace_seconds`` after it falls due,
        so a run lost by the broker does not block the scene forever.
        """
        due = (now if now is not None else time.time()) + max(delay, 0)
        token = uuid.uuid4().hex
        ttl = int(max(delay, 0) + self.grace_seconds)
        claimed = self.client.eval(
            _CLAIM_SCRIPT, 1, f"{SCHEDULE_PREFIX}{scene_id}", f"{due:.3f}", token, ttl
        )
        return token if claimed else None

    def consume(self, scene_id: str, token: str) -> bool:
        """True when ``token`` is still the scene's queued run (and clear it)."""
        return bool(self.client.eval(_CONSUME_SCRIPT, 1, f"{SCHEDULE_PREFIX}{scene_id}", token))
