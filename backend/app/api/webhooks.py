from __future__ import annotations
"""Provider callbacks.

The payload is only used to find the scene; the workflow then fetches the
job result itself, so a forged or replayed callback can at most cause an
extra poll.
"""

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.schemas.scene import WebhookAck
from app.services import generation_log as glog
from app.services.providers import extract_job_id
from app.services.recovery import SceneAdmin, get_scene_admin

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/{provider}", response_model=WebhookAck)
async def provider_callback(
    provider: str,
    payload: dict[str, Any] = Body(...),
    db: AsyncSession = Depends(get_db),
    admin: SceneAdmin = Depends(get_scene_admin),
):
    job_id = extract_job_id(payload)
    if not job_id:
        logger.warning("Callback from %s without a job id: %s", provider, list(payload))
        return WebhookAck(received=False)

    scene_id = await glog.scene_for_job(db, provider, job_id)
    if scene_id is None:
        raise HTTPException(status_code=404, detail=f"No scene submitted job {job_id}")

    logger.info("Callback from %s for job %s (scene %s)", provider, job_id, scene_id)
    await admin.trigger(scene_id)
    return WebhookAck(received=True, scene_id=scene_id)
