from __future__ import annotations
"""Scene API endpoints: creation, pipeline triggers and status."""

import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models.asset import Asset
from app.models.project import Project
from app.models.scene import Scene
from app.schemas.scene import (
    GenerationLogRead,
    SceneActionResponse,
    SceneCreate,
    SceneRead,
    SceneStatusRead,
)
from app.services import generation_log as glog
from app.services.recovery import SceneAdmin, get_scene_admin

router = APIRouter()


@router.get("/projects/{project_id}/scenes", response_model=list[SceneRead])
async def list_scenes(
    project_id: str,
    db: AsyncSession = Depends(get_db),
    limit: int = 200,
    offset: int = 0,
):
    """List all scenes for a project, ordered by sequence. Supports pagination."""
    result = await db.execute(
        select(Scene)
        .where(Scene.project_id == project_id)
        .order_by(Scene.sequence_order)
        .limit(limit)
        .offset(offset)
    )
    return result.scalars().all()


@router.post("/projects/{project_id}/scenes", response_model=SceneRead, status_code=201)
async def create_scene(
    project_id: str,
    data: SceneCreate,
    db: AsyncSession = Depends(get_db),
):
    if not await db.get(Project, project_id):
        raise HTTPException(status_code=404, detail="Project not found")
    if data.headshot_id:
        headshot = await db.get(Asset, data.headshot_id)
        if headshot is None or headshot.project_id != project_id:
            raise HTTPException(status_code=422, detail="headshot_id does not name an asset of this project")

    scene = Scene(id=uuid.uuid4().hex[:36], project_id=project_id, **data.model_dump())
    if data.audio_key or data.audio_url:
        scene.audio_provider = "uploaded"
    db.add(scene)
    await db.flush()
    await db.refresh(scene)
    return scene


@router.get("/scenes/{scene_id}", response_model=SceneRead)
async def get_scene(scene_id: str, db: AsyncSession = Depends(get_db)):
    scene = await db.get(Scene, scene_id)
    if not scene:
        raise HTTPException(status_code=404, detail="Scene not found")
    return scene


@router.post("/scenes/{scene_id}/generate", response_model=SceneActionResponse, status_code=202)
async def generate_scene(scene_id: str, admin: SceneAdmin = Depends(get_scene_admin)):
    """Start (or resume) the pipeline. Terminal scenes are not re-run."""
    scene = await admin.trigger(scene_id)
    message = (
        f"Scene is {scene.status}; nothing to run"
        if scene.is_terminal
        else "Generation queued"
    )
    return SceneActionResponse(scene_id=scene.id, status=scene.status, message=message)


@router.post("/scenes/{scene_id}/retry", response_model=SceneActionResponse, status_code=202)
async def retry_scene(scene_id: str, admin: SceneAdmin = Depends(get_scene_admin)):
    """Reset a FAILED scene to the stage that failed and queue it again."""
    scene = await admin.reset(scene_id)
    return SceneActionResponse(
        scene_id=scene.id, status=scene.status, message=f"Retrying from {scene.status}"
    )


@router.post("/scenes/{scene_id}/cancel", response_model=SceneActionResponse, status_code=202)
async def cancel_scene(scene_id: str, admin: SceneAdmin = Depends(get_scene_admin)):
    scene = await admin.request_cancel(scene_id)
    return SceneActionResponse(
        scene_id=scene.id, status=scene.status, message="Cancellation requested"
    )


@router.get("/scenes/{scene_id}/status", response_model=SceneStatusRead)
async def scene_status(scene_id: str, db: AsyncSession = Depends(get_db)):
    scene = await db.get(Scene, scene_id)
    if not scene:
        raise HTTPException(status_code=404, detail="Scene not found")
    recent = await glog.list_logs(db, scene_id, limit=10, newest_first=True)
    return SceneStatusRead(
        scene=SceneRead.model_validate(scene),
        recent_logs=[GenerationLogRead.model_validate(entry) for entry in recent],
    )


@router.get("/scenes/{scene_id}/logs", response_model=list[GenerationLogRead])
async def scene_logs(
    scene_id: str,
    db: AsyncSession = Depends(get_db),
    limit: int = 200,
):
    """The scene's Generation Log, oldest first."""
    if not await db.get(Scene, scene_id):
        raise HTTPException(status_code=404, detail="Scene not found")
    return await glog.list_logs(db, scene_id, limit=limit)
