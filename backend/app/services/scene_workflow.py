from __future__ import annotations
"""Scene workflow: move one scene to its next checkpoint.

A run loads the scene, takes the per-scene lock and does one unit of work
for the stage its status names:

  PENDING               prepare dialogue audio (speech provider)
  IMAGE_GENERATION      uploaded headshot, or submit/poll the image provider
  VIDEO_GENERATION      submit/poll the video provider
  LIPSYNC_APPLICATION   submit/poll the lip-sync provider

Provider jobs are never waited on in-process: a run either submits a job
(and logs the handle) or polls the logged handle once, then asks to be
re-enqueued with a delay. A finished stage relocates its output into the
artifact store and commits ``status + artifact reference + INFO log`` in one
conditional UPDATE, so a checkpoint is all-or-nothing and a run that lost a
race never overwrites a newer state.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy import select, update

from app.config import Settings, get_settings
from app.database import async_session_factory, utcnow
from app.models.asset import Asset, AssetType
from app.models.generation_log import LogEvent, LogLevel, PipelineStep
from app.models.scene import Scene, SceneStatus, check_transition, next_status
from app.models.system_setting import DEFAULT_HEADSHOT_KEY, SystemSetting
from app.services import generation_log as glog
from app.services.errors import (
    ConcurrencyConflict,
    InvalidInput,
    NotFound,
    PipelineError,
    ProviderRejected,
    ProviderTimeout,
    StorageFailure,
    TransientNetwork,
)
from app.services.generation_log import LoggedJob
from app.services.providers import (
    IMAGE,
    LIPSYNC,
    SPEECH,
    VIDEO,
    GenerationRequest,
    JobState,
    ProviderSet,
)
from app.services.providers.synclabs import validate_audio_duration
from app.services.pubsub import publish_scene_update
from app.services.scene_lock import RedisSceneLock, RunSchedule, SceneLock, hold_scene
from app.services.storage import ArtifactStore, get_artifact_store, scene_key

logger = logging.getLogger(__name__)

UPLOADED = "uploaded"


@dataclass(frozen=True)
class Stage:
    status: SceneStatus
    step: PipelineStep
    capability: str
    prefix: str  # scene column prefix and storage output type
    content_type: str
    label: str


STAGES: dict[SceneStatus, Stage] = {
    SceneStatus.PENDING: Stage(
        SceneStatus.PENDING, PipelineStep.AUDIO_GENERATION, SPEECH, "audio", "audio/mpeg", "Audio",
    ),
    SceneStatus.IMAGE_GENERATION: Stage(
        SceneStatus.IMAGE_GENERATION, PipelineStep.IMAGE_GENERATION, IMAGE, "image", "image/png", "Image",
    ),
    SceneStatus.VIDEO_GENERATION: Stage(
        SceneStatus.VIDEO_GENERATION, PipelineStep.VIDEO_GENERATION, VIDEO, "video", "video/mp4", "Video",
    ),
    SceneStatus.LIPSYNC_APPLICATION: Stage(
        SceneStatus.LIPSYNC_APPLICATION, PipelineStep.LIPSYNC_APPLICATION, LIPSYNC, "lipsync", "video/mp4", "Lip-sync",
    ),
}


@dataclass(frozen=True)
class StagePolicy:
    max_attempts: int
    backoff_base: float
    backoff_cap: float
    max_wait: float = 0.0
    poll_interval: float = 0.0
    poll_interval_cap: float = 120.0

    def backoff(self, attempt: int) -> float:
        """Delay before attempt ``attempt + 1``: exponential, capped."""
        return min(self.backoff_base * (2 ** max(attempt - 1, 0)), self.backoff_cap)

    def poll_delay(self, polls: int) -> float:
        cap = max(self.poll_interval_cap, self.poll_interval)
        return min(self.poll_interval * (1.5 ** polls), cap)


def stage_policy(status: SceneStatus, config: Settings | None = None) -> StagePolicy:
    config = config or get_settings()
    waits = {
        SceneStatus.IMAGE_GENERATION: (config.IMAGE_MAX_WAIT, config.IMAGE_POLL_INTERVAL),
        SceneStatus.VIDEO_GENERATION: (config.VIDEO_MAX_WAIT, config.VIDEO_POLL_INTERVAL),
        SceneStatus.LIPSYNC_APPLICATION: (config.LIPSYNC_MAX_WAIT, config.LIPSYNC_POLL_INTERVAL),
    }
    max_wait, interval = waits.get(status, (0, 0))
    return StagePolicy(
        max_attempts=config.STAGE_MAX_ATTEMPTS,
        backoff_base=config.STAGE_BACKOFF_BASE,
        backoff_cap=config.STAGE_BACKOFF_CAP,
        max_wait=float(max_wait),
        poll_interval=float(interval),
        poll_interval_cap=float(config.POLL_INTERVAL_CAP),
    )


def image_prompt(scene: Scene) -> str:
    return (
        "Professional cinematic portrait of a confident business person in "
        f"{scene.environment or 'modern office'}, wearing {scene.wardrobe or 'business attire'}, "
        f"{scene.mood_lighting or 'cinematic'} lighting, high quality, photorealistic, "
        "ultra detailed, 8k"
    )


def video_prompt(scene: Scene) -> str:
    return (
        f"{scene.movement or 'subtle head movements'}, "
        f"{scene.camera or 'medium close-up shot'}, professional video"
    )


_QUOTA_MARKERS = ("quota", "rate limit", "insufficient credit", "too many requests")
_TRANSIENT_MARKERS = ("timeout", "timed out", "busy", "overload", "capacity", "try again", "internal error")


def job_failure(provider: str, reason: str | None, config: Settings | None = None) -> ProviderRejected:
    """Classify a job the provider reported as failed."""
    config = config or get_settings()
    text = reason or "job failed"
    lowered = text.lower()
    if any(marker in lowered for marker in _QUOTA_MARKERS):
        retryable = config.RETRY_QUOTA_REJECTIONS
    else:
        retryable = any(marker in lowered for marker in _TRANSIENT_MARKERS)
    return ProviderRejected(f"{provider} job failed: {text}", provider=provider, retryable=retryable)


@dataclass
class StageOutput:
    """A finished stage, ready to be checkpointed."""
    values: dict[str, Any]
    message: str
    provider: str | None = None
    job_id: str | None = None
    created_key: str | None = None  # object written by this run; removed if the commit loses
    event: LogEvent = LogEvent.COMPLETED
    duration_ms: int | None = None
    details: dict[str, Any] | None = None


@dataclass
class RunOutcome:
    """What one run did, and when (if ever) the scene should run again."""
    scene_id: str
    action: str  # noop | busy | advanced | completed | waiting | retrying | failed | cancelled | stale
    status: str | None = None
    delay: float | None = None
    message: str | None = None

    @property
    def continues(self) -> bool:
        return self.delay is not None


def enqueue_scene_run(scene_id: str, delay: float | None = 0) -> None:
    """Schedule a workflow run through Celery, unless an earlier one is queued.

    Triggers (API, webhooks, the sweeper) and the run's own continuation all
    come through here, so a scene never has two self-continuing chains.
    """
    from app.tasks.scene_tasks import advance_scene

    countdown = max(delay or 0, 0)
    token = RunSchedule().claim(scene_id, countdown)
    if token is None:
        logger.debug("Scene %s already has a run queued, not scheduling another", scene_id)
        return
    advance_scene.apply_async(args=[scene_id, token], countdown=countdown)


class SceneWorkflow:
    """Drives scenes through the pipeline; every collaborator is injectable."""

    def __init__(
        self,
        *,
        session_factory=None,
        store: ArtifactStore | None = None,
        providers: ProviderSet | None = None,
        lock: SceneLock | None = None,
        enqueue: Callable[[str, float], None] | None = None,
        notify: Callable[..., None] | None = None,
        clock: Callable[[], datetime] | None = None,
        config: Settings | None = None,
    ) -> None:
        self.session_factory = session_factory or async_session_factory
        self.store = store or get_artifact_store()
        self.providers = providers or ProviderSet()
        self.lock = lock or RedisSceneLock()
        self.enqueue = enqueue or enqueue_scene_run
        self.notify = notify or publish_scene_update
        self.clock = clock or utcnow
        self.config = config or get_settings()

    # ── entry point ────────────────────────────────────────────

    async def run(self, scene_id: str) -> RunOutcome:
        """Advance ``scene_id`` by one unit of work and schedule the next run."""
        try:
            async with hold_scene(self.lock, scene_id):
                outcome = await self._advance(scene_id)
        except ConcurrencyConflict:
            logger.info("Scene %s is held by another run, skipping", scene_id)
            return RunOutcome(scene_id, "busy")

        if outcome.continues:
            self.enqueue(scene_id, outcome.delay)
        return outcome

    async def _advance(self, scene_id: str) -> RunOutcome:
        scene = await self.load_scene(scene_id)
        if scene.is_terminal:
            logger.info("Scene %s is %s, nothing to do", scene_id, scene.status)
            return RunOutcome(scene_id, "noop", scene.status)

        stage = STAGES[SceneStatus(scene.status)]
        if scene.cancel_requested:
            return await self._cancel(scene, stage)

        try:
            result = await self._run_stage(scene, stage)
        except PipelineError as e:
            return await self._fail_attempt(scene, stage, e)

        if isinstance(result, RunOutcome):
            return result
        return await self.checkpoint(scene, stage, result)

    async def _run_stage(self, scene: Scene, stage: Stage) -> StageOutput | RunOutcome:
        if stage.status is SceneStatus.PENDING:
            return await self._prepare_audio(scene, stage)
        if stage.status is SceneStatus.IMAGE_GENERATION:
            headshot = await self._find_headshot(scene)
            if headshot is not None:
                return await self._use_headshot(headshot)
        return await self._drive_job(scene, stage)

    # ── stage handlers ─────────────────────────────────────────

    async def _prepare_audio(self, scene: Scene, stage: Stage) -> StageOutput:
        if scene.audio_key or scene.audio_url:
            return StageOutput(
                values={},
                message="Using existing scene audio",
                provider=scene.audio_provider or UPLOADED,
                event=LogEvent.SKIPPED,
            )

        dialogue = (scene.dialogue or "").strip()
        if not dialogue:
            raise InvalidInput("Scene has no dialogue to voice")
        duration = validate_audio_duration(len(dialogue), self.config.LIPSYNC_MAX_DURATION)
        voice_id = await self._resolve_voice(scene)

        provider = self.providers.get(SPEECH, scene.audio_provider)
        model = scene.audio_model or provider.default_model
        started = time.monotonic()
        speech = await provider.synthesize(dialogue, voice_id, model)

        key = scene_key(scene.project_id, scene.id, stage.prefix)
        await self.store.put(key, speech.audio, speech.content_type)
        url = await self._stored_url(key)
        return StageOutput(
            values={
                "audio_key": key,
                "audio_url": url,
                "audio_duration": duration,
                "audio_provider": provider.name,
                "audio_model": model,
            },
            message=f"Audio generated ({speech.character_count} chars, ~{duration:.0f}s)",
            provider=provider.name,
            created_key=key,
            duration_ms=int((time.monotonic() - started) * 1000),
            details={"voice_id": voice_id},
        )

    async def _resolve_voice(self, scene: Scene) -> str:
        if scene.voice_id:
            return scene.voice_id
        async with self.session_factory() as session:
            voice_id = await session.scalar(
                select(Asset.voice_id)
                .where(
                    Asset.project_id == scene.project_id,
                    Asset.asset_type == AssetType.VOICE.value,
                    Asset.voice_id.is_not(None),
                )
                .order_by(Asset.created_at)
                .limit(1)
            )
        voice_id = voice_id or self.config.DEFAULT_VOICE_ID
        if not voice_id:
            raise InvalidInput("Scene has no voice and no default voice is configured")
        return voice_id

    async def _find_headshot(self, scene: Scene) -> Optional[Asset]:
        async with self.session_factory() as session:
            asset_id = scene.headshot_id
            if not asset_id:
                setting = await session.get(SystemSetting, DEFAULT_HEADSHOT_KEY)
                asset_id = setting.value if setting else None
            if not asset_id:
                return None
            asset = await session.get(Asset, asset_id)
        if asset is None or not (asset.storage_key or asset.url):
            logger.warning("Headshot %s for scene %s is unusable, generating instead", asset_id, scene.id)
            return None
        return asset

    async def _use_headshot(self, asset: Asset) -> StageOutput:
        url = asset.url or await self.store.url_for(asset.storage_key)
        return StageOutput(
            values={
                "image_key": asset.storage_key,
                "image_url": url,
                "image_provider": UPLOADED,
                "image_model": UPLOADED,
            },
            message=f"Using uploaded headshot '{asset.name}'",
            provider=UPLOADED,
            details={"asset_id": asset.id},
        )

    async def _drive_job(self, scene: Scene, stage: Stage) -> StageOutput | RunOutcome:
        policy = stage_policy(stage.status, self.config)
        async with self.session_factory() as session:
            job = await glog.active_job(session, scene.id, stage.step.value)
            polls = await glog.polls_for_job(session, scene.id, job.job_id) if job else 0
            failure = None if job else await glog.last_failed_attempt(session, scene.id, stage.step.value)

        if job is None:
            if failure is not None:
                # A run triggered early must not cut the retry backoff short
                due = failure.created_at + timedelta(seconds=policy.backoff(failure.attempt or 1))
                wait = (due - self.clock()).total_seconds()
                if wait > 0:
                    logger.info(
                        "Scene %s: %s retry not due for %.0fs", scene.id, stage.label, wait,
                    )
                    return RunOutcome(
                        scene.id, "retrying", scene.status, delay=wait,
                        message=f"Backing off after attempt {failure.attempt}",
                    )
            return await self._submit(scene, stage, policy)
        try:
            return await self._poll(scene, stage, policy, job, polls)
        except PipelineError as e:
            e.details.setdefault("job_id", job.job_id)
            e.provider = e.provider or job.provider
            raise

    async def _submit(self, scene: Scene, stage: Stage, policy: StagePolicy) -> RunOutcome:
        provider = self.providers.get(stage.capability, getattr(scene, f"{stage.prefix}_provider"))
        attempt = await self._attempts_used(scene, stage) + 1
        request = await self.build_request(scene, stage, provider)

        handle = await provider.submit(request)
        await self._log(
            scene, stage, LogLevel.DEBUG, LogEvent.SUBMITTED,
            f"{stage.label} job submitted: {handle.job_id}",
            provider=handle.provider, job_id=handle.job_id, attempt=attempt,
            details={"model": request.model, "prompt": request.prompt},
        )
        return RunOutcome(
            scene.id, "waiting", scene.status,
            delay=policy.poll_interval,
            message=f"Submitted {handle.provider} job {handle.job_id}",
        )

    async def _poll(
        self,
        scene: Scene,
        stage: Stage,
        policy: StagePolicy,
        job: LoggedJob,
        polls: int,
    ) -> StageOutput | RunOutcome:
        provider = self.providers.get(stage.capability, job.provider)
        elapsed = max((self.clock() - job.submitted_at).total_seconds(), 0.0)
        started = time.monotonic()

        try:
            result = await provider.fetch(job.job_id)
        except TransientNetwork as e:
            if elapsed >= policy.max_wait:
                raise self._timeout(stage, job, elapsed, policy) from e
            await self._log(
                scene, stage, LogLevel.WARN, LogEvent.POLLED,
                f"{stage.label} status check failed, will poll again: {e}",
                provider=provider.name, job_id=job.job_id, attempt=job.attempt,
                error_code=e.code,
            )
            return RunOutcome(scene.id, "waiting", scene.status, delay=policy.poll_delay(polls))

        if result.is_pending:
            if elapsed >= policy.max_wait:
                raise self._timeout(stage, job, elapsed, policy)
            progress = f" ({result.progress}%)" if result.progress is not None else ""
            await self._log(
                scene, stage, LogLevel.DEBUG, LogEvent.POLLED,
                f"{stage.label} job {job.job_id} pending{progress}, {elapsed:.0f}s elapsed",
                provider=provider.name, job_id=job.job_id, attempt=job.attempt,
            )
            delay = min(policy.poll_delay(polls), max(policy.max_wait - elapsed, 1.0))
            return RunOutcome(scene.id, "waiting", scene.status, delay=delay)

        if result.state is JobState.FAILED:
            raise job_failure(provider.name, result.error, self.config)

        if not result.media_url:
            raise ProviderRejected(
                f"{provider.name} job {job.job_id} finished without a media URL",
                provider=provider.name,
                retryable=False,
            )

        key = scene_key(scene.project_id, scene.id, stage.prefix)
        await self.store.put_from_url(key, result.media_url, stage.content_type)
        url = await self._stored_url(key)

        values: dict[str, Any] = {
            f"{stage.prefix}_key": key,
            f"{stage.prefix}_url": url,
            f"{stage.prefix}_provider": provider.name,
            f"{stage.prefix}_model": getattr(scene, f"{stage.prefix}_model") or provider.default_model,
        }
        if stage.status is SceneStatus.IMAGE_GENERATION:
            values["image_prompt"] = image_prompt(scene)
        elif stage.status is SceneStatus.VIDEO_GENERATION:
            values["video_prompt"] = video_prompt(scene)

        return StageOutput(
            values=values,
            message=f"{stage.label} generated ({elapsed:.0f}s)",
            provider=provider.name,
            job_id=job.job_id,
            created_key=key,
            duration_ms=int(elapsed * 1000 + (time.monotonic() - started) * 1000),
            details={"source_url": result.media_url},
        )

    def _timeout(self, stage: Stage, job: LoggedJob, elapsed: float, policy: StagePolicy) -> ProviderTimeout:
        return ProviderTimeout(
            f"{stage.label} job {job.job_id} still pending after {elapsed:.0f}s "
            f"(max {policy.max_wait:.0f}s)",
            provider=job.provider,
            retryable=self.config.TIMEOUT_IS_RETRYABLE,
            details={"job_id": job.job_id, "elapsed_seconds": round(elapsed)},
        )

    async def build_request(self, scene: Scene, stage: Stage, provider: Any) -> GenerationRequest:
        """Inputs for a provider submission; upstream artifacts go out as signed URLs."""
        model = getattr(scene, f"{stage.prefix}_model") or provider.default_model
        request = GenerationRequest(scene_id=scene.id, project_id=scene.project_id, model=model)

        if stage.status is SceneStatus.IMAGE_GENERATION:
            request.prompt = image_prompt(scene)
            request.params = {"aspect_ratio": "16:9"}
        elif stage.status is SceneStatus.VIDEO_GENERATION:
            request.prompt = video_prompt(scene)
            request.image_url = await self._upstream_url(scene.image_key, scene.image_url, "image")
            request.params = {
                "duration": self.config.VIDEO_DURATION,
                "mode": self.config.VIDEO_MODE,
                "aspect_ratio": "16:9",
            }
        elif stage.status is SceneStatus.LIPSYNC_APPLICATION:
            request.video_url = await self._upstream_url(scene.video_key, None, "video")
            request.audio_url = await self._upstream_url(scene.audio_key, scene.audio_url, "audio")
        return request

    async def _upstream_url(self, key: str | None, fallback_url: str | None, what: str) -> str:
        if not key:
            if fallback_url:
                return fallback_url
            raise InvalidInput(f"Scene has no {what} to work from")
        try:
            return await self.store.signed_get(key, self.config.SIGNED_URL_TTL)
        except NotFound as e:
            raise InvalidInput(f"Stored {what} is missing: {key}") from e

    async def _stored_url(self, key: str) -> str:
        try:
            return await self.store.url_for(key)
        except PipelineError:
            await self.discard(key)
            raise

    # ── checkpoints and terminal writes ────────────────────────

    async def checkpoint(self, scene: Scene, stage: Stage, output: StageOutput) -> RunOutcome:
        """Commit the stage's artifact, the advance and its INFO entry together."""
        target = next_status(stage.status)
        check_transition(stage.status, target)

        values = dict(output.values)
        values["status"] = target.value
        if target is SceneStatus.COMPLETED:
            values["final_video_url"] = values.get("lipsync_url") or scene.lipsync_url

        async with self.session_factory() as session:
            result = await session.execute(
                update(Scene)
                .where(
                    Scene.id == scene.id,
                    Scene.status == stage.status.value,
                    Scene.cancel_requested.is_(False),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            committed = result.rowcount == 1
            if committed:
                glog.append_log(
                    session,
                    scene_id=scene.id,
                    project_id=scene.project_id,
                    step=stage.step.value,
                    level=LogLevel.INFO,
                    event=output.event,
                    message=output.message,
                    provider=output.provider,
                    job_id=output.job_id,
                    duration_ms=output.duration_ms,
                    details=output.details,
                )
                await session.commit()
            else:
                await session.rollback()

        if not committed:
            return await self._lost_checkpoint(scene, stage, output)

        self.notify(scene.project_id, scene.id, target.value, output.message)
        if target is SceneStatus.COMPLETED:
            return RunOutcome(scene.id, "completed", target.value, message=output.message)
        return RunOutcome(scene.id, "advanced", target.value, delay=0, message=output.message)

    async def _lost_checkpoint(self, scene: Scene, stage: Stage, output: StageOutput) -> RunOutcome:
        if output.created_key:
            await self.discard(output.created_key)
        try:
            current = await self.load_scene(scene.id)
        except NotFound:
            logger.warning("Scene %s was deleted while its %s stage ran", scene.id, stage.label)
            return RunOutcome(scene.id, "stale")

        if current.status == stage.status.value and current.cancel_requested:
            return await self._cancel(current, stage)

        await self._log(
            current, stage, LogLevel.WARN, LogEvent.STALE,
            f"{stage.label} result discarded: scene moved to {current.status} while it ran",
            provider=output.provider, job_id=output.job_id,
        )
        return RunOutcome(scene.id, "stale", current.status)

    async def _fail_attempt(self, scene: Scene, stage: Stage, error: PipelineError) -> RunOutcome:
        policy = stage_policy(stage.status, self.config)
        attempt = await self._attempts_used(scene, stage) + 1
        job_id = error.details.get("job_id")

        if error.retryable and attempt < policy.max_attempts:
            delay = policy.backoff(attempt)
            await self._log(
                scene, stage, LogLevel.WARN, LogEvent.ATTEMPT_FAILED,
                f"{stage.label} attempt {attempt}/{policy.max_attempts} failed "
                f"({error.code}): {error}. Retrying in {delay:.0f}s",
                provider=error.provider, job_id=job_id, attempt=attempt,
                error_code=error.code, details=error.details or None,
            )
            return RunOutcome(scene.id, "retrying", scene.status, delay=delay, message=str(error))

        if error.retryable:
            message = f"{stage.label} failed after {attempt} attempts ({error.code}): {error}"
        else:
            message = f"{stage.label} failed ({error.code}): {error}"
        return await self.mark_failed(
            scene, stage, message,
            error_code=error.code, provider=error.provider, job_id=job_id, attempt=attempt,
            details=error.details or None,
        )

    async def mark_failed(
        self,
        scene: Scene,
        stage: Stage,
        message: str,
        *,
        event: LogEvent = LogEvent.FAILED,
        error_code: str | None = None,
        provider: str | None = None,
        job_id: str | None = None,
        attempt: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> RunOutcome:
        """Move the scene to FAILED with an ERROR entry, unless it has moved on."""
        check_transition(stage.status, SceneStatus.FAILED)
        async with self.session_factory() as session:
            result = await session.execute(
                update(Scene)
                .where(Scene.id == scene.id, Scene.status == stage.status.value)
                .values(
                    status=SceneStatus.FAILED.value,
                    failed_stage=stage.status.value,
                    failure_reason=message[:2000],
                )
                .execution_options(synchronize_session=False)
            )
            failed = result.rowcount == 1
            if failed:
                glog.append_log(
                    session,
                    scene_id=scene.id,
                    project_id=scene.project_id,
                    step=stage.step.value,
                    level=LogLevel.ERROR,
                    event=event,
                    message=message,
                    provider=provider,
                    job_id=job_id,
                    attempt=attempt,
                    error_code=error_code,
                    details=details,
                )
                await session.commit()
            else:
                await session.rollback()

        if not failed:
            logger.warning("Scene %s left %s before it could be failed: %s", scene.id, stage.status.value, message)
            return RunOutcome(scene.id, "stale")

        self.notify(scene.project_id, scene.id, SceneStatus.FAILED.value, message)
        return RunOutcome(scene.id, "failed", SceneStatus.FAILED.value, message=message)

    async def _cancel(self, scene: Scene, stage: Stage) -> RunOutcome:
        outcome = await self.mark_failed(
            scene, stage, "Cancelled by user",
            event=LogEvent.CANCELLED, error_code="Cancelled",
        )
        if outcome.action == "failed":
            outcome.action = "cancelled"
        return outcome

    # ── helpers ────────────────────────────────────────────────

    async def load_scene(self, scene_id: str) -> Scene:
        async with self.session_factory() as session:
            scene = await session.get(Scene, scene_id)
        if scene is None:
            raise NotFound(f"Scene not found: {scene_id}")
        return scene

    async def _attempts_used(self, scene: Scene, stage: Stage) -> int:
        async with self.session_factory() as session:
            return await glog.attempts_used(session, scene.id, stage.step.value)

    async def _log(
        self,
        scene: Scene,
        stage: Stage,
        level: LogLevel,
        event: LogEvent,
        message: str,
        **fields: Any,
    ) -> None:
        async with self.session_factory() as session:
            glog.append_log(
                session,
                scene_id=scene.id,
                project_id=scene.project_id,
                step=stage.step.value,
                level=level,
                event=event,
                message=message,
                **fields,
            )
            await session.commit()

    async def discard(self, key: str) -> None:
        try:
            await self.store.delete(key)
        except StorageFailure:
            logger.warning("Could not remove orphaned object %s", key, exc_info=True)
