from __future__ import annotations
"""Administrative scene operations: recovery, reset/retry, cancel, force-fail.

Recovery covers the case where a provider finished a job but its result never
reached the scene (worker died, poll window ran out). The result is relocated
under a fresh key and committed as if the stage had completed, with a
``recovered`` log entry noting it was done by hand.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.generation_log import GenerationLog, LogEvent, LogLevel
from app.models.scene import (
    NON_TERMINAL_STATUSES,
    Scene,
    SceneStatus,
    check_transition,
    next_status,
)
from app.services import generation_log as glog
from app.services.errors import ConcurrencyConflict, InvalidInput, InvalidTransition, ProviderTimeout
from app.services.providers.base import JobHandle, JobState, await_result
from app.services.scene_lock import hold_scene
from app.services.scene_workflow import STAGES, SceneWorkflow, Stage
from app.services.storage import scene_key

logger = logging.getLogger(__name__)

MANUAL = "manual"


def _parse_status(value: str) -> SceneStatus:
    try:
        return SceneStatus(value)
    except ValueError:
        raise InvalidInput(f"Unknown scene status: {value}") from None


@dataclass
class RecoveryResult:
    scene_id: str
    status: str
    recovered_stage: str | None = None
    url: str | None = None
    job_id: str | None = None
    job_state: str | None = None
    message: str | None = None


async def find_stalled_scenes(
    session: AsyncSession,
    threshold_minutes: int,
    now: datetime,
) -> list[str]:
    """Non-terminal scenes that started running but have been silent too long."""
    cutoff = now - timedelta(minutes=threshold_minutes)
    last_activity = (
        select(
            GenerationLog.scene_id.label("scene_id"),
            func.max(GenerationLog.created_at).label("last_at"),
        )
        .group_by(GenerationLog.scene_id)
        .subquery()
    )
    result = await session.execute(
        select(Scene.id)
        .join(last_activity, last_activity.c.scene_id == Scene.id)
        .where(
            Scene.status.in_([s.value for s in NON_TERMINAL_STATUSES]),
            last_activity.c.last_at < cutoff,
        )
        .order_by(last_activity.c.last_at)
    )
    return list(result.scalars().all())


class SceneAdmin:
    """Operator-facing actions; shares collaborators with the workflow."""

    def __init__(self, workflow: SceneWorkflow | None = None) -> None:
        self.workflow = workflow or SceneWorkflow()

    # ── triggers ────────────────────────────────────────────

    async def trigger(self, scene_id: str) -> Scene:
        """Enqueue a workflow run; terminal scenes are left alone."""
        scene = await self.workflow.load_scene(scene_id)
        if not scene.is_terminal:
            self.workflow.enqueue(scene_id, 0)
        return scene

    async def request_cancel(self, scene_id: str) -> Scene:
        """Flag the scene; the running workflow stops at its next checkpoint."""
        scene = await self.workflow.load_scene(scene_id)
        if scene.is_terminal:
            raise InvalidTransition(f"Scene {scene_id} is already {scene.status}")
        async with self.workflow.session_factory() as session:
            await session.execute(
                update(Scene)
                .where(Scene.id == scene_id)
                .values(cancel_requested=True)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        logger.info("Cancellation requested for scene %s", scene_id)
        self.workflow.enqueue(scene_id, 0)
        return await self.workflow.load_scene(scene_id)

    async def reset(self, scene_id: str, to_status: str | None = None) -> Scene:
        """Move a FAILED scene back to a stage and enqueue it.

        Defaults to the stage that failed. Attempt counters restart from zero.
        """
        async with hold_scene(self.workflow.lock, scene_id):
            scene = await self.workflow.load_scene(scene_id)
            if scene.status != SceneStatus.FAILED.value:
                raise InvalidTransition(
                    f"Only FAILED scenes can be reset (scene is {scene.status})"
                )
            target = _parse_status(to_status or scene.failed_stage or SceneStatus.PENDING.value)
            if target not in NON_TERMINAL_STATUSES:
                raise InvalidTransition(
                    f"Reset target must be a pipeline stage, got {target.value}"
                )
            check_transition(SceneStatus.FAILED, target, admin=True)

            async with self.workflow.session_factory() as session:
                result = await session.execute(
                    update(Scene)
                    .where(Scene.id == scene_id, Scene.status == SceneStatus.FAILED.value)
                    .values(
                        status=target.value,
                        failed_stage=None,
                        failure_reason=None,
                        cancel_requested=False,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    raise ConcurrencyConflict(f"Scene {scene_id} changed during reset")
                glog.append_log(
                    session,
                    scene_id=scene.id,
                    project_id=scene.project_id,
                    step=STAGES[target].step.value,
                    level=LogLevel.INFO,
                    event=LogEvent.RESET,
                    message=f"Scene reset from FAILED to {target.value} for retry",
                    details={"previous_failure": scene.failure_reason},
                )
                await session.commit()

        self.workflow.notify(scene.project_id, scene.id, target.value, "Reset for retry")
        self.workflow.enqueue(scene_id, 0)
        return await self.workflow.load_scene(scene_id)

    async def force_fail(self, scene_id: str, reason: str) -> Scene:
        async with hold_scene(self.workflow.lock, scene_id):
            scene = await self.workflow.load_scene(scene_id)
            if scene.is_terminal:
                raise InvalidTransition(f"Scene {scene_id} is already {scene.status}")
            stage = STAGES[SceneStatus(scene.status)]
            outcome = await self.workflow.mark_failed(
                scene, stage, f"Marked failed by operator: {reason}", error_code="Manual",
            )
        if outcome.action != "failed":
            raise ConcurrencyConflict(f"Scene {scene_id} changed while being failed")
        return await self.workflow.load_scene(scene_id)

    # ── recovery ────────────────────────────────────────────

    def _recoverable_stage(self, scene: Scene, stage: str | None) -> Stage:
        if stage:
            status = _parse_status(stage)
        elif scene.status == SceneStatus.FAILED.value:
            status = SceneStatus(scene.failed_stage or SceneStatus.PENDING.value)
        else:
            status = SceneStatus(scene.status)
        if status not in STAGES or status is SceneStatus.PENDING:
            raise InvalidInput(f"Nothing to recover for stage {status.value}")
        return STAGES[status]

    async def recover(
        self,
        scene_id: str,
        output_url: str,
        *,
        job_id: str | None = None,
        provider: str | None = None,
        stage: str | None = None,
    ) -> RecoveryResult:
        """Store a finished provider result and advance the scene past its stage."""
        if not output_url:
            raise InvalidInput("output_url is required")
        async with hold_scene(self.workflow.lock, scene_id):
            return await self._recover_locked(
                scene_id, output_url, job_id=job_id, provider=provider, stage=stage,
            )

    async def _recover_locked(
        self,
        scene_id: str,
        output_url: str,
        *,
        job_id: str | None,
        provider: str | None,
        stage: str | None,
    ) -> RecoveryResult:
        wf = self.workflow
        scene = await wf.load_scene(scene_id)
        current = SceneStatus(scene.status)
        target_stage = self._recoverable_stage(scene, stage)
        target = next_status(target_stage.status)
        check_transition(current, target, admin=True)

        key = scene_key(scene.project_id, scene.id, target_stage.prefix)
        await wf.store.put_from_url(key, output_url, target_stage.content_type)
        url = await wf.store.url_for(key)

        prefix = target_stage.prefix
        values = {
            f"{prefix}_key": key,
            f"{prefix}_url": url,
            f"{prefix}_provider": provider or getattr(scene, f"{prefix}_provider"),
            "status": target.value,
            "failed_stage": None,
            "failure_reason": None,
        }
        if current is SceneStatus.FAILED:
            # A recovered scene resumes; an earlier cancel no longer applies
            values["cancel_requested"] = False
        if target is SceneStatus.COMPLETED:
            values["final_video_url"] = url
        message = (
            f"{target_stage.label} completed "
            f"(manually recovered from job {job_id or 'unknown'})"
        )

        async with wf.session_factory() as session:
            result = await session.execute(
                update(Scene)
                .where(Scene.id == scene.id, Scene.status == current.value)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                await wf.discard(key)
                raise ConcurrencyConflict(f"Scene {scene_id} changed during recovery")
            glog.append_log(
                session,
                scene_id=scene.id,
                project_id=scene.project_id,
                step=target_stage.step.value,
                level=LogLevel.INFO,
                event=LogEvent.RECOVERED,
                message=message,
                provider=provider or MANUAL,
                job_id=job_id,
                details={"manual_recovery": True, "source_url": output_url, "from_status": current.value},
            )
            await session.commit()

        logger.info("Scene %s recovered %s → %s", scene_id, current.value, target.value)
        wf.notify(scene.project_id, scene.id, target.value, message)
        if target is not SceneStatus.COMPLETED:
            wf.enqueue(scene_id, 0)
        return RecoveryResult(
            scene_id=scene_id,
            status=target.value,
            recovered_stage=target_stage.status.value,
            url=url,
            job_id=job_id,
            job_state=JobState.DONE.value,
            message=message,
        )

    async def check_job(
        self,
        scene_id: str,
        *,
        stage: str | None = None,
        wait_seconds: float = 0,
        poll_interval: float = 15.0,
    ) -> RecoveryResult:
        """Ask the provider about the last logged job and act on the answer.

        With ``wait_seconds`` the job is polled until it settles or the wait
        runs out, for operators who would rather block than re-run the check.
        """
        wf = self.workflow
        scene = await wf.load_scene(scene_id)
        target_stage = self._recoverable_stage(scene, stage)

        async with wf.session_factory() as session:
            job = await glog.last_submitted_job(session, scene.id, target_stage.step.value)
        if job is None:
            raise InvalidInput(
                f"No {target_stage.label.lower()} job recorded for scene {scene_id}"
            )

        provider = wf.providers.get(target_stage.capability, job.provider)
        if wait_seconds > 0:
            polls = math.ceil(wait_seconds / poll_interval) + 1 if poll_interval > 0 else 1
            try:
                result = await await_result(
                    provider, JobHandle(provider=provider.name, job_id=job.job_id),
                    max_attempts=polls, interval_seconds=poll_interval,
                )
            except ProviderTimeout:
                result = await provider.fetch(job.job_id)
        else:
            result = await provider.fetch(job.job_id)

        if result.state is JobState.DONE and result.media_url:
            return await self.recover(
                scene_id, result.media_url,
                job_id=job.job_id, provider=provider.name, stage=target_stage.status.value,
            )

        if result.state is JobState.FAILED:
            message = f"{target_stage.label} job {job.job_id} failed at {provider.name}: {result.error}"
            if scene.status == target_stage.status.value:
                async with hold_scene(wf.lock, scene_id):
                    await wf.mark_failed(
                        scene, target_stage, message,
                        error_code="ProviderRejected", provider=provider.name, job_id=job.job_id,
                    )
            scene = await wf.load_scene(scene_id)
            return RecoveryResult(
                scene_id=scene_id,
                status=scene.status,
                job_id=job.job_id,
                job_state=JobState.FAILED.value,
                message=message,
            )

        progress = f" ({result.progress}%)" if result.progress is not None else ""
        return RecoveryResult(
            scene_id=scene_id,
            status=scene.status,
            job_id=job.job_id,
            job_state=result.state.value,
            message=f"{target_stage.label} job {job.job_id} still processing{progress}",
        )


def get_scene_admin() -> SceneAdmin:
    """FastAPI dependency."""
    return SceneAdmin()
