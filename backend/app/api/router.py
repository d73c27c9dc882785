from __future__ import annotations
"""Master API router: mounts all sub-routers."""

from fastapi import APIRouter

from app.api.admin import router as admin_router
from app.api.projects import router as projects_router
from app.api.scenes import router as scenes_router
from app.api.webhooks import router as webhooks_router

api_router = APIRouter(prefix="/api", redirect_slashes=False)

api_router.include_router(projects_router, prefix="/projects", tags=["Projects"])
api_router.include_router(scenes_router, tags=["Scenes"])
api_router.include_router(admin_router, prefix="/admin", tags=["Admin"])
api_router.include_router(webhooks_router, prefix="/webhooks", tags=["Webhooks"])
