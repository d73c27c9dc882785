from __future__ import annotations
"""SceneCast: FastAPI application entry point.

Mounts the API routes, maps pipeline errors to HTTP responses and manages
the database engine lifecycle.
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.router import api_router
from app.api.ws import router as ws_router
from app.config import get_settings
from app.database import close_db, init_db
from app.services.errors import PipelineError

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    "NotFound": 404,
    "InvalidTransition": 409,
    "ConcurrencyConflict": 409,
    "InvalidInput": 422,
    "ProviderRejected": 502,
    "ProviderTimeout": 504,
    "TransientNetwork": 503,
    "StorageFailure": 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: optional table bootstrap on startup, close on shutdown."""
    logger.info("SceneCast starting up...")
    logger.info("Database: %s", settings.DB_URL or f"{settings.DB_USER}@{settings.DB_HOST}/{settings.DB_NAME}")

    if settings.DEBUG:
        await init_db()
    else:
        logger.info("Skipping init_db (schema managed by Alembic)")

    yield

    await close_db()
    logger.info("SceneCast shut down")


app = FastAPI(
    title="SceneCast API",
    description="Scene generation pipeline: headshot → talking-head video → lip-sync",
    version="0.1.0",
    lifespan=lifespan,
    redirect_slashes=False,
)

# CORS: allow frontend dev server (configurable via CORS_ORIGINS env)
_cors_origins = os.environ.get(
    "CORS_ORIGINS",
    "http://localhost:3000,http://127.0.0.1:3000",
).split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    status_code = ERROR_STATUS.get(exc.code, 500)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "code": exc.code},
    )


# Mount API routes
app.include_router(api_router)
app.include_router(ws_router)


@app.get("/health")
async def health():
    return {
        "service": "SceneCast",
        "status": "healthy",
        "providers": {
            "image": settings.IMAGE_PROVIDER,
            "video": settings.VIDEO_PROVIDER,
            "lipsync": settings.LIPSYNC_PROVIDER,
            "speech": settings.SPEECH_PROVIDER,
        },
    }
