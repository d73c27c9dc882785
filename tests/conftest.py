"""Pytest configuration and shared fixtures.

Puts ``backend/`` on ``sys.path`` so ``app`` imports regardless of how pytest
is invoked, and points the app at a throwaway SQLite database before any app
module reads its settings.
"""
import os
import sys
import threading
import uuid
from datetime import datetime, timedelta

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
BACKEND = os.path.join(ROOT, "backend")
for path in (ROOT, BACKEND):
    if path not in sys.path:
        sys.path.insert(0, path)

os.environ.setdefault("DB_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("R2_PUBLIC_URL", "")
os.environ.setdefault("WEBHOOK_BASE_URL", "")

import pytest  # noqa: E402

from app.config import get_settings  # noqa: E402
from app.database import build_engine, build_session_factory, init_db, utcnow  # noqa: E402
from app.models.project import Project  # noqa: E402
from app.models.scene import Scene, SceneStatus  # noqa: E402
from app.services.errors import NotFound  # noqa: E402
from app.services.providers import IMAGE, LIPSYNC, SPEECH, VIDEO, ProviderSet  # noqa: E402
from app.services.providers.base import JobHandle, JobResult, JobState, SpeechResult  # noqa: E402
from app.services.scene_workflow import SceneWorkflow  # noqa: E402


# ──────── Fakes ────────


class FakeStore:
    """In-memory artifact store with the ArtifactStore interface."""

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.deleted: list[str] = []
        self.downloads: dict[str, bytes] = {}
        self.put_error: Exception | None = None
        self.relocate_error: Exception | None = None

    async def put(self, key, data, content_type):
        if self.put_error is not None:
            raise self.put_error
        self.objects[key] = data if isinstance(data, bytes) else data.read()
        return key

    async def put_from_url(self, key, source_url, content_type, http_client=None):
        if self.relocate_error is not None:
            raise self.relocate_error
        if source_url not in self.downloads:
            raise NotFound(f"Provider result not found: {source_url}")
        return await self.put(key, self.downloads[source_url], content_type)

    async def exists(self, key):
        return key in self.objects

    async def signed_get(self, key, ttl_seconds=None):
        if key not in self.objects:
            raise NotFound(f"No stored object at {key}")
        return f"https://signed.test/{key}?ttl={ttl_seconds or 3600}"

    async def url_for(self, key):
        return await self.signed_get(key)

    async def delete(self, key):
        self.deleted.append(key)
        return self.objects.pop(key, None) is not None


class FakeJobProvider:
    """Submit/fetch provider scripted with queued responses.

    Each queue pops from the front; the last entry repeats once the queue is
    down to one. Entries that are exceptions are raised.
    """

    def __init__(self, name, default_model="test-model"):
        self.name = name
        self.default_model = default_model
        self.submits: list = []
        self.fetches: list[str] = []
        self.submit_script: list = []
        self.fetch_script: list = []
        self._next_id = 0

    @staticmethod
    def _take(script):
        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def submit(self, request):
        self.submits.append(request)
        if self.submit_script:
            return self._take(self.submit_script)
        self._next_id += 1
        return JobHandle(provider=self.name, job_id=f"{self.name}-job-{self._next_id}")

    async def fetch(self, job_id):
        self.fetches.append(job_id)
        if not self.fetch_script:
            return JobResult(state=JobState.PENDING)
        return self._take(self.fetch_script)

    def finish_with(self, url):
        self.fetch_script = [JobResult(state=JobState.DONE, media_url=url)]


class FakeSpeech:
    name = "elevenlabs"
    default_model = "eleven_multilingual_v2"

    def __init__(self):
        self.calls: list[tuple[str, str]] = []
        self.error: Exception | None = None

    async def synthesize(self, text, voice_id, model=None):
        self.calls.append((text, voice_id))
        if self.error is not None:
            raise self.error
        return SpeechResult(audio=b"ID3-audio", content_type="audio/mpeg", character_count=len(text))


class FakeLock:
    """In-memory scene lock; acquire and release run on worker threads."""

    def __init__(self, ttl_seconds=900):
        self.ttl_seconds = ttl_seconds
        self.held: dict[str, str] = {}
        self.acquired: list[str] = []
        self.refreshed: list[str] = []
        self._mutex = threading.Lock()

    def acquire(self, scene_id):
        with self._mutex:
            if scene_id in self.held:
                return None
            token = uuid.uuid4().hex
            self.held[scene_id] = token
            self.acquired.append(scene_id)
            return token

    def refresh(self, scene_id, token):
        with self._mutex:
            self.refreshed.append(scene_id)
            return self.held.get(scene_id) == token

    def release(self, scene_id, token):
        with self._mutex:
            if self.held.get(scene_id) == token:
                del self.held[scene_id]


class FakeClock:
    def __init__(self):
        self.offset = timedelta()

    def advance(self, seconds):
        self.offset += timedelta(seconds=seconds)

    def __call__(self) -> datetime:
        return utcnow() + self.offset


# ──────── Fixtures ────────


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'scenecast.db'}")
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def providers():
    return {
        IMAGE: FakeJobProvider("piapi-flux", "Qubico/flux1-schnell"),
        VIDEO: FakeJobProvider("kling", "kling"),
        LIPSYNC: FakeJobProvider("synclabs", "lipsync-2"),
        SPEECH: FakeSpeech(),
    }


@pytest.fixture
def lock():
    return FakeLock()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return get_settings().model_copy(
        update={
            "STAGE_MAX_ATTEMPTS": 3,
            "STAGE_BACKOFF_BASE": 10.0,
            "STAGE_BACKOFF_CAP": 60.0,
            "TIMEOUT_IS_RETRYABLE": True,
            "RETRY_QUOTA_REJECTIONS": True,
            "IMAGE_MAX_WAIT": 120,
            "IMAGE_POLL_INTERVAL": 2,
            "VIDEO_MAX_WAIT": 600,
            "VIDEO_POLL_INTERVAL": 30,
            "LIPSYNC_MAX_WAIT": 600,
            "LIPSYNC_POLL_INTERVAL": 15,
            "DEFAULT_VOICE_ID": "voice-default",
            "LIPSYNC_MAX_DURATION": 300,
        }
    )


@pytest.fixture
def enqueued():
    return []


@pytest.fixture
def notified():
    return []


@pytest.fixture
def workflow(session_factory, store, providers, lock, clock, config, enqueued, notified):
    return SceneWorkflow(
        session_factory=session_factory,
        store=store,
        providers=ProviderSet(overrides=providers),
        lock=lock,
        enqueue=lambda scene_id, delay: enqueued.append((scene_id, delay)),
        notify=lambda project_id, scene_id, status, message=None: notified.append((scene_id, status)),
        clock=clock,
        config=config,
    )


@pytest.fixture
def make_scene(session_factory):
    """Insert a project + scene; keyword arguments become scene columns."""

    async def _make(status=SceneStatus.PENDING, **fields):
        async with session_factory() as session:
            project = Project(id=uuid.uuid4().hex, name="Launch video")
            session.add(project)
            scene = Scene(
                id=uuid.uuid4().hex,
                project_id=project.id,
                dialogue=fields.pop("dialogue", "Welcome to the quarterly update."),
                status=getattr(status, "value", status),
                **fields,
            )
            session.add(scene)
            await session.commit()
            return scene

    return _make


@pytest.fixture
def reload_scene(session_factory):
    async def _reload(scene_id):
        async with session_factory() as session:
            return await session.get(Scene, scene_id)

    return _reload
