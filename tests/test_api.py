import httpx
import pytest

from app.database import get_db
from app.main import app
from app.models.generation_log import LogEvent, LogLevel
from app.models.scene import SceneStatus
from app.services import generation_log as glog
from app.services.recovery import SceneAdmin, get_scene_admin


@pytest.fixture
async def client(session_factory, workflow):
    async def override_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_scene_admin] = lambda: SceneAdmin(workflow)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
    app.dependency_overrides.clear()


async def _project(client, name="Q3 launch"):
    response = await client.post("/api/projects/", json={"name": name})
    assert response.status_code == 201
    return response.json()


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


async def test_project_and_scene_lifecycle(client, enqueued):
    project = await _project(client)

    created = await client.post(
        f"/api/projects/{project['id']}/scenes",
        json={"dialogue": "Hello team", "environment": "rooftop", "sequence_order": 2},
    )
    assert created.status_code == 201
    scene = created.json()
    assert scene["status"] == SceneStatus.PENDING.value

    listed = await client.get(f"/api/projects/{project['id']}/scenes")
    assert [s["id"] for s in listed.json()] == [scene["id"]]

    queued = await client.post(f"/api/scenes/{scene['id']}/generate")
    assert queued.status_code == 202
    assert queued.json()["message"] == "Generation queued"
    assert enqueued == [(scene["id"], 0)]


async def test_create_scene_for_unknown_project(client):
    response = await client.post("/api/projects/nope/scenes", json={"dialogue": "hi"})
    assert response.status_code == 404


async def test_assets_validation(client):
    project = await _project(client)

    bad = await client.post(f"/api/projects/{project['id']}/assets", json={"name": "CEO"})
    assert bad.status_code == 422

    good = await client.post(
        f"/api/projects/{project['id']}/assets",
        json={"name": "CEO", "url": "https://cdn.test/ceo.png"},
    )
    assert good.status_code == 201
    assert good.json()["asset_type"] == "HEADSHOT"

    voices = await client.post(
        f"/api/projects/{project['id']}/assets",
        json={"name": "Narrator", "asset_type": "VOICE", "voice_id": "el-voice-1"},
    )
    assert voices.status_code == 201
    assert len((await client.get(f"/api/projects/{project['id']}/assets")).json()) == 2


async def test_status_includes_recent_logs(client, make_scene, session_factory):
    scene = await make_scene(SceneStatus.VIDEO_GENERATION)
    async with session_factory() as session:
        for n in range(12):
            glog.append_log(
                session, scene_id=scene.id, project_id=scene.project_id,
                step="VIDEO_GENERATION", level=LogLevel.DEBUG, event=LogEvent.POLLED,
                message=f"poll {n}", job_id="k-1",
            )
        await session.commit()

    status = await client.get(f"/api/scenes/{scene.id}/status")
    logs = await client.get(f"/api/scenes/{scene.id}/logs")

    body = status.json()
    assert body["scene"]["status"] == SceneStatus.VIDEO_GENERATION.value
    assert len(body["recent_logs"]) == 10
    assert body["recent_logs"][0]["message"] == "poll 11"
    assert [entry["message"] for entry in logs.json()][:2] == ["poll 0", "poll 1"]


@pytest.mark.parametrize(
    "status, path, expected",
    [
        (SceneStatus.IMAGE_GENERATION, "retry", 409),
        (SceneStatus.COMPLETED, "cancel", 409),
    ],
)
async def test_illegal_actions_map_to_conflict(client, make_scene, status, path, expected):
    scene = await make_scene(status)

    response = await client.post(f"/api/scenes/{scene.id}/{path}")

    assert response.status_code == expected
    assert response.json()["code"] == "InvalidTransition"


async def test_missing_scene_is_404(client):
    response = await client.post("/api/scenes/missing/generate")

    assert response.status_code == 404
    assert response.json()["code"] == "NotFound"


async def test_retry_failed_scene(client, make_scene, enqueued):
    scene = await make_scene(SceneStatus.FAILED, failed_stage=SceneStatus.VIDEO_GENERATION.value)

    response = await client.post(f"/api/scenes/{scene.id}/retry")

    assert response.status_code == 202
    assert response.json()["status"] == SceneStatus.VIDEO_GENERATION.value
    assert enqueued == [(scene.id, 0)]


async def test_admin_recover_and_busy_scene(client, make_scene, store, lock):
    store.objects["img.png"] = b"png"
    scene = await make_scene(SceneStatus.VIDEO_GENERATION, image_key="img.png")
    store.downloads["https://piapi.test/v.mp4"] = b"mp4"

    lock.held[scene.id] = "worker"
    busy = await client.post(f"/api/admin/scenes/{scene.id}/recover", json={"output_url": "https://piapi.test/v.mp4"})
    assert busy.status_code == 409
    assert busy.json()["code"] == "ConcurrencyConflict"

    del lock.held[scene.id]
    response = await client.post(
        f"/api/admin/scenes/{scene.id}/recover",
        json={"output_url": "https://piapi.test/v.mp4", "job_id": "k-1", "provider": "kling"},
    )
    assert response.status_code == 200
    assert response.json()["status"] == SceneStatus.LIPSYNC_APPLICATION.value


async def test_admin_check_job_without_job(client, make_scene):
    scene = await make_scene(SceneStatus.VIDEO_GENERATION)

    response = await client.post(f"/api/admin/scenes/{scene.id}/check-job")

    assert response.status_code == 422
    assert response.json()["code"] == "InvalidInput"


async def test_admin_reset_and_fail(client, make_scene):
    scene = await make_scene(SceneStatus.LIPSYNC_APPLICATION)

    failed = await client.post(f"/api/admin/scenes/{scene.id}/fail", json={"reason": "bad take"})
    assert failed.status_code == 200
    assert failed.json()["status"] == SceneStatus.FAILED.value

    reset = await client.post(f"/api/admin/scenes/{scene.id}/reset", json={"to_status": "IMAGE_GENERATION"})
    assert reset.status_code == 200
    assert reset.json()["status"] == SceneStatus.IMAGE_GENERATION.value


async def test_default_headshot_setting(client):
    project = await _project(client)
    asset = (
        await client.post(
            f"/api/projects/{project['id']}/assets",
            json={"name": "Presenter", "url": "https://cdn.test/p.png"},
        )
    ).json()

    assert (await client.get("/api/admin/settings/default-headshot")).json() == {"asset_id": None}
    saved = await client.put("/api/admin/settings/default-headshot", json={"asset_id": asset["id"]})
    assert saved.status_code == 200
    assert (await client.get("/api/admin/settings/default-headshot")).json() == {"asset_id": asset["id"]}

    missing = await client.put("/api/admin/settings/default-headshot", json={"asset_id": "nope"})
    assert missing.status_code == 404


async def test_webhook_triggers_submitting_scene(client, workflow, make_scene, enqueued):
    scene = await make_scene(SceneStatus.IMAGE_GENERATION)
    await workflow.run(scene.id)
    enqueued.clear()

    response = await client.post("/api/webhooks/piapi-flux", json={"data": {"task_id": "piapi-flux-job-1"}})

    assert response.status_code == 200
    assert response.json() == {"received": True, "scene_id": scene.id}
    assert enqueued == [(scene.id, 0)]


async def test_webhook_without_job_id_or_unknown_job(client):
    ignored = await client.post("/api/webhooks/kling", json={"status": "done"})
    unknown = await client.post("/api/webhooks/kling", json={"task_id": "never-submitted"})

    assert ignored.json() == {"received": False, "scene_id": None}
    assert unknown.status_code == 404
