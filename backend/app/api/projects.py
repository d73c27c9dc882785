from __future__ import annotations
"""Project and reference-asset API endpoints."""

import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models.asset import Asset
from app.models.project import Project
from app.schemas.project import AssetCreate, AssetRead, ProjectCreate, ProjectRead

router = APIRouter()


@router.get("/", response_model=list[ProjectRead])
async def list_projects(db: AsyncSession = Depends(get_db)):
    """List all projects ordered by creation date (newest first)."""
    result = await db.execute(select(Project).order_by(Project.created_at.desc()))
    return result.scalars().all()


@router.post("/", response_model=ProjectRead, status_code=201)
async def create_project(data: ProjectCreate, db: AsyncSession = Depends(get_db)):
    project = Project(id=uuid.uuid4().hex[:36], name=data.name)
    db.add(project)
    await db.flush()
    await db.refresh(project)
    return project


@router.get("/{project_id}", response_model=ProjectRead)
async def get_project(project_id: str, db: AsyncSession = Depends(get_db)):
    project = await db.get(Project, project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


@router.get("/{project_id}/assets", response_model=list[AssetRead])
async def list_assets(project_id: str, db: AsyncSession = Depends(get_db)):
    result = await db.execute(
        select(Asset).where(Asset.project_id == project_id).order_by(Asset.created_at)
    )
    return result.scalars().all()


@router.post("/{project_id}/assets", response_model=AssetRead, status_code=201)
async def create_asset(
    project_id: str,
    data: AssetCreate,
    db: AsyncSession = Depends(get_db),
):
    """Register a headshot or voice for use by the project's scenes."""
    if not await db.get(Project, project_id):
        raise HTTPException(status_code=404, detail="Project not found")
    asset = Asset(
        id=uuid.uuid4().hex[:36],
        project_id=project_id,
        asset_type=data.asset_type.value,
        name=data.name,
        storage_key=data.storage_key,
        url=data.url,
        content_type=data.content_type,
        voice_id=data.voice_id,
    )
    db.add(asset)
    await db.flush()
    await db.refresh(asset)
    return asset
