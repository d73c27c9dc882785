from __future__ import annotations
"""Celery tasks that run the scene workflow.

advance_scene does one unit of work per invocation; the workflow re-enqueues
it (apply_async with a countdown) while the scene still has work to do.
"""

import logging

from celery import shared_task
from sqlalchemy.exc import SQLAlchemyError

from app.config import get_settings
from app.database import async_session_factory, utcnow
from app.services.errors import NotFound
from app.services.recovery import find_stalled_scenes
from app.services.scene_lock import RunSchedule
from app.services.scene_workflow import SceneWorkflow, enqueue_scene_run
from app.tasks import run_async

logger = logging.getLogger(__name__)
settings = get_settings()


@shared_task(
    bind=True,
    max_retries=5,
    default_retry_delay=30,
    autoretry_for=(SQLAlchemyError, ConnectionError),
    retry_backoff=True,
    retry_backoff_max=600,
)
def advance_scene(self, scene_id: str, token: str | None = None):
    """Run the workflow once for a scene.

    Pipeline failures are recorded on the scene by the workflow itself; only
    infrastructure errors (database, broker) escape and are retried here,
    leaving the scene in its pre-advance status.

    ``token`` ties the run to the scene's queued-run marker; a run that was
    superseded by an earlier one is dropped. A run that finds the scene busy
    queues a follow-up so the chain is not lost.
    """
    if token is not None and not self.request.retries and not RunSchedule().consume(scene_id, token):
        logger.info("Scene %s: run superseded by an earlier one, dropping", scene_id)
        return {"scene_id": scene_id, "action": "superseded"}

    try:
        outcome = run_async(SceneWorkflow().run(scene_id))
    except NotFound:
        logger.warning("Scene %s no longer exists, dropping run", scene_id)
        return {"scene_id": scene_id, "action": "missing"}

    if outcome.action == "busy":
        enqueue_scene_run(scene_id, settings.BUSY_RETRY_DELAY)

    logger.info(
        "Scene %s: %s (status=%s%s)",
        scene_id, outcome.action, outcome.status,
        f", next run in {outcome.delay:.0f}s" if outcome.continues else "",
    )
    return {"scene_id": scene_id, "action": outcome.action, "status": outcome.status}


@shared_task
def sweep_stalled_scenes():
    """Re-enqueue non-terminal scenes with no log activity for a while."""
    scene_ids = run_async(_stalled_scene_ids())
    for scene_id in scene_ids:
        enqueue_scene_run(scene_id, 0)
    if scene_ids:
        logger.info("Re-enqueued %d stalled scene(s)", len(scene_ids))
    return {"requeued": len(scene_ids)}


async def _stalled_scene_ids() -> list[str]:
    async with async_session_factory() as session:
        return await find_stalled_scenes(
            session, settings.STALL_THRESHOLD_MINUTES, utcnow()
        )
