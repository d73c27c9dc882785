from __future__ import annotations
"""Administrative endpoints: recovery, status overrides and system settings."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models.asset import Asset, AssetType
from app.models.system_setting import DEFAULT_HEADSHOT_KEY, SystemSetting
from app.schemas.project import DefaultHeadshotUpdate
from app.schemas.scene import (
    CheckJobRequest,
    RecoverRequest,
    RecoveryRead,
    SceneFailRequest,
    SceneRead,
    SceneResetRequest,
)
from app.services.recovery import SceneAdmin, get_scene_admin

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/scenes/{scene_id}/recover", response_model=RecoveryRead)
async def recover_scene(
    scene_id: str,
    data: RecoverRequest,
    admin: SceneAdmin = Depends(get_scene_admin),
):
    """Store a provider result fetched out of band and advance the scene."""
    result = await admin.recover(
        scene_id,
        data.output_url,
        job_id=data.job_id,
        provider=data.provider,
        stage=data.stage.value if data.stage else None,
    )
    return RecoveryRead.model_validate(result)


@router.post("/scenes/{scene_id}/check-job", response_model=RecoveryRead)
async def check_scene_job(
    scene_id: str,
    data: CheckJobRequest | None = None,
    admin: SceneAdmin = Depends(get_scene_admin),
):
    """Look up the logged provider job for the stuck stage and act on its state."""
    stage = data.stage.value if data and data.stage else None
    result = await admin.check_job(scene_id, stage=stage)
    return RecoveryRead.model_validate(result)


@router.post("/scenes/{scene_id}/reset", response_model=SceneRead)
async def reset_scene(
    scene_id: str,
    data: SceneResetRequest,
    admin: SceneAdmin = Depends(get_scene_admin),
):
    return await admin.reset(scene_id, data.to_status.value if data.to_status else None)


@router.post("/scenes/{scene_id}/fail", response_model=SceneRead)
async def fail_scene(
    scene_id: str,
    data: SceneFailRequest,
    admin: SceneAdmin = Depends(get_scene_admin),
):
    return await admin.force_fail(scene_id, data.reason)


@router.get("/settings/default-headshot", response_model=DefaultHeadshotUpdate)
async def get_default_headshot(db: AsyncSession = Depends(get_db)):
    setting = await db.get(SystemSetting, DEFAULT_HEADSHOT_KEY)
    return DefaultHeadshotUpdate(asset_id=setting.value if setting else None)


@router.put("/settings/default-headshot", response_model=DefaultHeadshotUpdate)
async def set_default_headshot(
    data: DefaultHeadshotUpdate,
    db: AsyncSession = Depends(get_db),
):
    """Choose the headshot used by scenes that do not name one."""
    if data.asset_id:
        asset = await db.get(Asset, data.asset_id)
        if asset is None or asset.asset_type != AssetType.HEADSHOT.value:
            raise HTTPException(status_code=404, detail="Headshot asset not found")

    setting = await db.get(SystemSetting, DEFAULT_HEADSHOT_KEY)
    if setting is None:
        setting = SystemSetting(key=DEFAULT_HEADSHOT_KEY, value=data.asset_id)
        db.add(setting)
    else:
        setting.value = data.asset_id
    await db.flush()
    logger.info("Default headshot set to %s", data.asset_id)
    return DefaultHeadshotUpdate(asset_id=data.asset_id)
