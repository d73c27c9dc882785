import asyncio

import pytest
from sqlalchemy import update

from app.models.asset import Asset, AssetType
from app.models.generation_log import LogEvent, LogLevel, PipelineStep
from app.models.scene import Scene, SceneStatus
from app.models.system_setting import DEFAULT_HEADSHOT_KEY, SystemSetting
from app.services import generation_log as glog
from app.services.errors import ProviderRejected, StorageFailure, TransientNetwork
from app.services.providers import IMAGE, LIPSYNC, SPEECH, VIDEO
from app.services.providers.base import JobHandle, JobResult, JobState
from app.services.scene_workflow import StagePolicy, job_failure


async def _logs(session_factory, scene_id):
    async with session_factory() as session:
        return list(await glog.list_logs(session, scene_id))


async def _run_until_settled(workflow, scene_id, max_runs=20):
    outcome = None
    for _ in range(max_runs):
        outcome = await workflow.run(scene_id)
        if not outcome.continues:
            return outcome
    raise AssertionError(f"scene {scene_id} still running after {max_runs} runs: {outcome}")


# ──────── audio preparation ────────


async def test_pending_scene_gets_audio_and_advances(workflow, make_scene, reload_scene, store, providers, enqueued, session_factory):
    scene = await make_scene(SceneStatus.PENDING)

    outcome = await workflow.run(scene.id)

    assert outcome.action == "advanced"
    saved = await reload_scene(scene.id)
    assert saved.status == SceneStatus.IMAGE_GENERATION.value
    assert saved.audio_key in store.objects
    assert saved.audio_url.startswith("https://signed.test/")
    assert saved.audio_provider == "elevenlabs"
    assert providers[SPEECH].calls == [("Welcome to the quarterly update.", "voice-default")]
    assert enqueued == [(scene.id, 0)]

    logs = await _logs(session_factory, scene.id)
    assert [(l.step, l.level, l.event) for l in logs] == [
        (PipelineStep.AUDIO_GENERATION.value, LogLevel.INFO.value, LogEvent.COMPLETED.value),
    ]


async def test_existing_audio_is_not_resynthesized(workflow, make_scene, reload_scene, providers):
    scene = await make_scene(SceneStatus.PENDING, audio_key="uploads/voice.mp3", audio_url="https://cdn.test/voice.mp3")

    await workflow.run(scene.id)

    saved = await reload_scene(scene.id)
    assert saved.status == SceneStatus.IMAGE_GENERATION.value
    assert saved.audio_key == "uploads/voice.mp3"
    assert providers[SPEECH].calls == []


async def test_supplied_audio_url_skips_speech_synthesis(workflow, make_scene, reload_scene, providers, session_factory):
    scene = await make_scene(
        SceneStatus.PENDING,
        dialogue="",
        audio_url="https://cdn.test/voice.mp3",
        audio_provider="uploaded",
    )

    outcome = await workflow.run(scene.id)

    assert outcome.action == "advanced"
    saved = await reload_scene(scene.id)
    assert saved.status == SceneStatus.IMAGE_GENERATION.value
    assert saved.audio_url == "https://cdn.test/voice.mp3"
    assert saved.audio_key is None
    assert providers[SPEECH].calls == []
    logs = await _logs(session_factory, scene.id)
    assert [(l.level, l.event, l.provider) for l in logs] == [
        (LogLevel.INFO.value, LogEvent.SKIPPED.value, "uploaded"),
    ]


async def test_lipsync_uses_supplied_audio_url(workflow, make_scene, store, providers):
    store.objects["v.mp4"] = b"video"
    scene = await make_scene(
        SceneStatus.LIPSYNC_APPLICATION, video_key="v.mp4", audio_url="https://cdn.test/voice.mp3",
    )

    await workflow.run(scene.id)

    assert providers[LIPSYNC].submits[0].audio_url == "https://cdn.test/voice.mp3"


async def test_dialogue_over_plan_limit_fails_without_retry(workflow, make_scene, reload_scene, providers, enqueued, session_factory):
    scene = await make_scene(SceneStatus.PENDING, dialogue="word " * 6000)

    outcome = await workflow.run(scene.id)

    assert outcome.action == "failed"
    saved = await reload_scene(scene.id)
    assert saved.status == SceneStatus.FAILED.value
    assert saved.failed_stage == SceneStatus.PENDING.value
    assert "Audio too long" in saved.failure_reason
    assert providers[SPEECH].calls == []
    assert enqueued == []

    logs = await _logs(session_factory, scene.id)
    assert len(logs) == 1
    assert logs[0].level == LogLevel.ERROR.value
    assert logs[0].error_code == "InvalidInput"
    assert not [l for l in logs if l.event == LogEvent.ATTEMPT_FAILED.value]


async def test_scene_without_voice_fails(workflow, make_scene, reload_scene, config):
    workflow.config = config.model_copy(update={"DEFAULT_VOICE_ID": ""})
    scene = await make_scene(SceneStatus.PENDING)

    await workflow.run(scene.id)

    saved = await reload_scene(scene.id)
    assert saved.status == SceneStatus.FAILED.value
    assert "no voice" in saved.failure_reason


# ──────── image stage ────────


async def test_headshot_asset_skips_image_provider(workflow, make_scene, reload_scene, providers, session_factory):
    scene = await make_scene(SceneStatus.IMAGE_GENERATION)
    async with session_factory() as session:
        asset = Asset(
            project_id=scene.project_id,
            asset_type=AssetType.HEADSHOT.value,
            name="CEO portrait",
            storage_key="assets/ceo.png",
            url="https://cdn.test/ceo.png",
        )
        session.add(asset)
        await session.commit()
        await session.execute(update(Scene).where(Scene.id == scene.id).values(headshot_id=asset.id))
        await session.commit()

    await workflow.run(scene.id)

    saved = await reload_scene(scene.id)
    assert saved.status == SceneStatus.VIDEO_GENERATION.value
    assert saved.image_key == "assets/ceo.png"
    assert saved.image_url == "https://cdn.test/ceo.png"
    assert saved.image_provider == "uploaded"
    assert providers[IMAGE].submits == []


async def test_default_headshot_setting_is_used(workflow, make_scene, reload_scene, providers, session_factory):
    scene = await make_scene(SceneStatus.IMAGE_GENERATION)
    async with session_factory() as session:
        asset = Asset(
            project_id=scene.project_id,
            asset_type=AssetType.HEADSHOT.value,
            name="Default presenter",
            url="https://cdn.test/default.png",
        )
        session.add(asset)
        await session.flush()
        session.add(SystemSetting(key=DEFAULT_HEADSHOT_KEY, value=asset.id))
        await session.commit()

    await workflow.run(scene.id)

    saved = await reload_scene(scene.id)
    assert saved.status == SceneStatus.VIDEO_GENERATION.value
    assert saved.image_url == "https://cdn.test/default.png"
    assert providers[IMAGE].submits == []


async def test_image_job_is_submitted_then_polled(workflow, make_scene, reload_scene, store, providers, enqueued, session_factory):
    scene = await make_scene(SceneStatus.IMAGE_GENERATION, environment="glass boardroom")
    image = providers[IMAGE]

    first = await workflow.run(scene.id)
    assert first.action == "waiting"
    assert len(image.submits) == 1
    assert "glass boardroom" in image.submits[0].prompt
    assert enqueued[-1] == (scene.id, 2.0)

    image.finish_with("https://piapi.test/out.png")
    store.downloads["https://piapi.test/out.png"] = b"png-bytes"
    second = await workflow.run(scene.id)

    assert second.action == "advanced"
    assert len(image.submits) == 1
    assert image.fetches == ["piapi-flux-job-1"]
    saved = await reload_scene(scene.id)
    assert saved.status == SceneStatus.VIDEO_GENERATION.value
    assert store.objects[saved.image_key] == b"png-bytes"
    assert saved.image_prompt and "glass boardroom" in saved.image_prompt

    info = [l for l in await _logs(session_factory, scene.id) if l.level == LogLevel.INFO.value]
    assert len(info) == 1
    assert info[0].job_id == "piapi-flux-job-1"


# ──────── video and lip-sync stages ────────


async def test_video_stage_completes_with_single_info_entry(workflow, make_scene, reload_scene, store, providers, session_factory):
    store.objects["projects/p/scenes/s/image.png"] = b"png"
    scene = await make_scene(SceneStatus.VIDEO_GENERATION, image_key="projects/p/scenes/s/image.png")
    video = providers[VIDEO]
    video.finish_with("https://piapi.test/clip.mp4")
    store.downloads["https://piapi.test/clip.mp4"] = b"mp4"

    await workflow.run(scene.id)
    await workflow.run(scene.id)

    assert video.submits[0].image_url.startswith("https://signed.test/projects/p/scenes/s/image.png")
    saved = await reload_scene(scene.id)
    assert saved.status == SceneStatus.LIPSYNC_APPLICATION.value
    assert saved.video_url is not None
    assert saved.video_key in store.objects

    video_info = [
        l for l in await _logs(session_factory, scene.id)
        if l.step == PipelineStep.VIDEO_GENERATION.value and l.level == LogLevel.INFO.value
    ]
    assert len(video_info) == 1


async def test_lipsync_completion_sets_final_video(workflow, make_scene, reload_scene, store, providers, enqueued):
    store.objects["v.mp4"] = b"video"
    store.objects["a.mp3"] = b"audio"
    scene = await make_scene(SceneStatus.LIPSYNC_APPLICATION, video_key="v.mp4", audio_key="a.mp3")
    providers[LIPSYNC].finish_with("https://sync.test/result.mp4")
    store.downloads["https://sync.test/result.mp4"] = b"synced"

    await workflow.run(scene.id)
    enqueued.clear()
    outcome = await workflow.run(scene.id)

    assert outcome.action == "completed"
    assert enqueued == []
    request = providers[LIPSYNC].submits[0]
    assert "v.mp4" in request.video_url and "a.mp3" in request.audio_url
    saved = await reload_scene(scene.id)
    assert saved.status == SceneStatus.COMPLETED.value
    assert saved.final_video_url == saved.lipsync_url
    assert store.objects[saved.lipsync_key] == b"synced"


async def test_missing_upstream_image_is_invalid_input(workflow, make_scene, reload_scene, providers, session_factory):
    scene = await make_scene(SceneStatus.VIDEO_GENERATION, image_key="projects/p/gone.png")

    await workflow.run(scene.id)

    saved = await reload_scene(scene.id)
    assert saved.status == SceneStatus.FAILED.value
    assert saved.failed_stage == SceneStatus.VIDEO_GENERATION.value
    assert providers[VIDEO].submits == []
    logs = await _logs(session_factory, scene.id)
    assert [l.error_code for l in logs] == ["InvalidInput"]


async def test_full_pipeline_logs_one_info_entry_per_stage(workflow, make_scene, reload_scene, store, providers, session_factory):
    scene = await make_scene(SceneStatus.PENDING)
    for capability, url in (
        (IMAGE, "https://piapi.test/i.png"),
        (VIDEO, "https://piapi.test/v.mp4"),
        (LIPSYNC, "https://sync.test/l.mp4"),
    ):
        providers[capability].finish_with(url)
        store.downloads[url] = url.encode()

    outcome = await _run_until_settled(workflow, scene.id)

    assert outcome.action == "completed"
    saved = await reload_scene(scene.id)
    assert saved.status == SceneStatus.COMPLETED.value
    for key in (saved.audio_key, saved.image_key, saved.video_key, saved.lipsync_key):
        assert key in store.objects

    info_steps = [
        l.step for l in await _logs(session_factory, scene.id) if l.level == LogLevel.INFO.value
    ]
    assert info_steps == [step.value for step in PipelineStep]


# ──────── idempotency and concurrency ────────


@pytest.mark.parametrize("status", [SceneStatus.COMPLETED, SceneStatus.FAILED])
async def test_terminal_scene_is_a_noop(workflow, make_scene, reload_scene, providers, enqueued, session_factory, status):
    scene = await make_scene(status)

    outcome = await workflow.run(scene.id)

    assert outcome.action == "noop"
    assert (await reload_scene(scene.id)).status == status.value
    assert providers[IMAGE].submits == [] and providers[SPEECH].calls == []
    assert enqueued == []
    assert await _logs(session_factory, scene.id) == []


async def test_held_lock_makes_run_a_silent_noop(workflow, make_scene, lock, providers, enqueued):
    scene = await make_scene(SceneStatus.IMAGE_GENERATION)
    lock.held[scene.id] = "another-worker"

    outcome = await workflow.run(scene.id)

    assert outcome.action == "busy"
    assert providers[IMAGE].submits == []
    assert enqueued == []


async def test_concurrent_triggers_submit_once(workflow, make_scene, providers):
    scene = await make_scene(SceneStatus.IMAGE_GENERATION)

    outcomes = await asyncio.gather(workflow.run(scene.id), workflow.run(scene.id))

    assert sorted(o.action for o in outcomes) == ["busy", "waiting"]
    assert len(providers[IMAGE].submits) == 1


async def test_restarted_run_resumes_logged_job(workflow, make_scene, providers, store, reload_scene):
    scene = await make_scene(SceneStatus.IMAGE_GENERATION)
    await workflow.run(scene.id)

    # A second run (another worker, after a crash) must poll, not resubmit
    providers[IMAGE].finish_with("https://piapi.test/late.png")
    store.downloads["https://piapi.test/late.png"] = b"late"
    await workflow.run(scene.id)

    assert len(providers[IMAGE].submits) == 1
    assert providers[IMAGE].fetches == ["piapi-flux-job-1"]
    assert (await reload_scene(scene.id)).status == SceneStatus.VIDEO_GENERATION.value


# ──────── failures and retries ────────


async def test_timeouts_retry_then_fail_after_max_attempts(workflow, make_scene, reload_scene, providers, clock, store, session_factory):
    store.objects["img.png"] = b"png"
    scene = await make_scene(SceneStatus.VIDEO_GENERATION, image_key="img.png")
    # Every job stays pending; the clock sits past the 600s max wait
    clock.advance(601)

    outcome = await _run_until_settled(workflow, scene.id)

    assert outcome.action == "failed"
    assert len(providers[VIDEO].submits) == 3
    saved = await reload_scene(scene.id)
    assert saved.status == SceneStatus.FAILED.value
    assert saved.failed_stage == SceneStatus.VIDEO_GENERATION.value
    assert saved.video_url is None

    timeouts = [l for l in await _logs(session_factory, scene.id) if l.error_code == "ProviderTimeout"]
    assert [l.attempt for l in timeouts] == [1, 2, 3]
    assert [l.level for l in timeouts] == [LogLevel.WARN.value, LogLevel.WARN.value, LogLevel.ERROR.value]


async def test_transient_submit_error_backs_off_and_retries(workflow, make_scene, providers, enqueued, session_factory, clock):
    scene = await make_scene(SceneStatus.IMAGE_GENERATION)
    providers[IMAGE].submit_script = [
        TransientNetwork("piapi unavailable (503)", provider="piapi-flux"),
        JobHandle(provider="piapi-flux", job_id="task-2"),
    ]

    first = await workflow.run(scene.id)
    assert first.action == "retrying"
    assert enqueued[-1] == (scene.id, 10.0)

    clock.advance(10)
    second = await workflow.run(scene.id)
    assert second.action == "waiting"

    logs = await _logs(session_factory, scene.id)
    assert [(l.level, l.event, l.attempt) for l in logs] == [
        (LogLevel.WARN.value, LogEvent.ATTEMPT_FAILED.value, 1),
        (LogLevel.DEBUG.value, LogEvent.SUBMITTED.value, 2),
    ]


async def test_early_run_does_not_cut_backoff_short(workflow, make_scene, providers, enqueued, clock, session_factory):
    scene = await make_scene(SceneStatus.IMAGE_GENERATION)
    providers[IMAGE].submit_script = [
        TransientNetwork("piapi unavailable (503)", provider="piapi-flux"),
        JobHandle(provider="piapi-flux", job_id="task-2"),
    ]
    await workflow.run(scene.id)

    # A manual trigger or webhook lands while the retry is still backing off
    early = await workflow.run(scene.id)

    assert early.action == "retrying"
    assert len(providers[IMAGE].submits) == 1
    assert 0 < enqueued[-1][1] <= 10.0

    clock.advance(10)
    assert (await workflow.run(scene.id)).action == "waiting"
    assert len(providers[IMAGE].submits) == 2
    logs = await _logs(session_factory, scene.id)
    assert [l.event for l in logs] == [LogEvent.ATTEMPT_FAILED.value, LogEvent.SUBMITTED.value]


async def test_provider_rejection_fails_immediately(workflow, make_scene, reload_scene, session_factory):
    scene = await make_scene(SceneStatus.IMAGE_GENERATION)
    workflow.providers.get(IMAGE).submit_script = [
        ProviderRejected("piapi-flux API error (401): bad key", provider="piapi-flux", retryable=False)
    ]

    outcome = await workflow.run(scene.id)

    assert outcome.action == "failed"
    saved = await reload_scene(scene.id)
    assert saved.status == SceneStatus.FAILED.value
    logs = await _logs(session_factory, scene.id)
    assert [(l.level, l.error_code) for l in logs] == [(LogLevel.ERROR.value, "ProviderRejected")]


async def test_job_reported_failed_by_provider(workflow, make_scene, reload_scene, providers):
    scene = await make_scene(SceneStatus.IMAGE_GENERATION)
    providers[IMAGE].fetch_script = [JobResult(state=JobState.FAILED, error="content policy violation")]

    await workflow.run(scene.id)
    await workflow.run(scene.id)

    saved = await reload_scene(scene.id)
    assert saved.status == SceneStatus.FAILED.value
    assert "content policy violation" in saved.failure_reason


async def test_storage_failure_keeps_stage_and_reuses_job(workflow, make_scene, reload_scene, providers, store, session_factory):
    store.objects["img.png"] = b"png"
    scene = await make_scene(SceneStatus.VIDEO_GENERATION, image_key="img.png")
    providers[VIDEO].finish_with("https://piapi.test/clip.mp4")
    store.downloads["https://piapi.test/clip.mp4"] = b"mp4"
    store.relocate_error = StorageFailure("Upload failed: bucket unreachable")

    await workflow.run(scene.id)
    outcome = await workflow.run(scene.id)

    assert outcome.action == "retrying"
    saved = await reload_scene(scene.id)
    assert saved.status == SceneStatus.VIDEO_GENERATION.value
    assert saved.video_url is None
    failures = [l for l in await _logs(session_factory, scene.id) if l.error_code == "StorageFailure"]
    assert len(failures) == 1 and failures[0].level == LogLevel.WARN.value

    store.relocate_error = None
    await workflow.run(scene.id)

    assert len(providers[VIDEO].submits) == 1
    assert providers[VIDEO].fetches == ["kling-job-1", "kling-job-1"]
    assert (await reload_scene(scene.id)).status == SceneStatus.LIPSYNC_APPLICATION.value


# ──────── cancellation and stale checkpoints ────────


async def test_cancel_requested_before_submit(workflow, make_scene, reload_scene, providers, session_factory):
    scene = await make_scene(SceneStatus.IMAGE_GENERATION, cancel_requested=True)

    outcome = await workflow.run(scene.id)

    assert outcome.action == "cancelled"
    assert providers[IMAGE].submits == []
    saved = await reload_scene(scene.id)
    assert saved.status == SceneStatus.FAILED.value
    assert saved.failure_reason == "Cancelled by user"
    logs = await _logs(session_factory, scene.id)
    assert [(l.level, l.event) for l in logs] == [(LogLevel.ERROR.value, LogEvent.CANCELLED.value)]


async def test_cancel_during_relocation_discards_artifact(workflow, make_scene, reload_scene, providers, store, session_factory):
    scene = await make_scene(SceneStatus.IMAGE_GENERATION)
    await workflow.run(scene.id)
    providers[IMAGE].finish_with("https://piapi.test/out.png")
    store.downloads["https://piapi.test/out.png"] = b"png"

    relocate = store.put_from_url

    async def cancel_then_relocate(key, source_url, content_type, http_client=None):
        async with session_factory() as session:
            await session.execute(update(Scene).where(Scene.id == scene.id).values(cancel_requested=True))
            await session.commit()
        return await relocate(key, source_url, content_type)

    store.put_from_url = cancel_then_relocate
    outcome = await workflow.run(scene.id)

    assert outcome.action == "cancelled"
    saved = await reload_scene(scene.id)
    assert saved.status == SceneStatus.FAILED.value
    assert saved.image_key is None and saved.image_url is None
    assert len(store.deleted) == 1
    assert store.deleted[0] not in store.objects


async def test_stale_checkpoint_keeps_newer_state(workflow, make_scene, reload_scene, providers, store, session_factory):
    scene = await make_scene(SceneStatus.IMAGE_GENERATION)
    await workflow.run(scene.id)
    providers[IMAGE].finish_with("https://piapi.test/out.png")
    store.downloads["https://piapi.test/out.png"] = b"png"

    relocate = store.put_from_url

    async def advance_elsewhere(key, source_url, content_type, http_client=None):
        async with session_factory() as session:
            await session.execute(
                update(Scene)
                .where(Scene.id == scene.id)
                .values(status=SceneStatus.VIDEO_GENERATION.value, image_key="recovered.png")
            )
            await session.commit()
        return await relocate(key, source_url, content_type)

    store.put_from_url = advance_elsewhere
    outcome = await workflow.run(scene.id)

    assert outcome.action == "stale"
    saved = await reload_scene(scene.id)
    assert saved.status == SceneStatus.VIDEO_GENERATION.value
    assert saved.image_key == "recovered.png"
    assert store.deleted and store.deleted[0] not in store.objects
    logs = await _logs(session_factory, scene.id)
    assert logs[-1].event == LogEvent.STALE.value and logs[-1].level == LogLevel.WARN.value


# ──────── policy helpers ────────


def test_backoff_is_exponential_and_capped():
    policy = StagePolicy(max_attempts=5, backoff_base=10, backoff_cap=60)
    assert [policy.backoff(n) for n in (1, 2, 3, 4)] == [10, 20, 40, 60]


def test_poll_delay_grows_to_cap():
    policy = StagePolicy(max_attempts=3, backoff_base=1, backoff_cap=1, poll_interval=30, poll_interval_cap=120)
    delays = [policy.poll_delay(n) for n in range(6)]
    assert delays[0] == 30
    assert delays == sorted(delays)
    assert delays[-1] == 120


@pytest.mark.parametrize(
    "reason, retryable",
    [
        ("Monthly quota exceeded", True),
        ("upstream timeout while rendering", True),
        ("prompt rejected by safety filter", False),
        (None, False),
    ],
)
def test_job_failure_classification(config, reason, retryable):
    error = job_failure("kling", reason, config)
    assert error.code == "ProviderRejected"
    assert error.retryable is retryable
