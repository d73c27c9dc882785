"""ORM model package: registers all models with Base.metadata."""

from app.models.project import Project
from app.models.asset import Asset, AssetType
from app.models.scene import (
    Scene,
    SceneStatus,
    VALID_TRANSITIONS,
    ADMIN_TRANSITIONS,
    TERMINAL_STATUSES,
)
from app.models.generation_log import GenerationLog, LogEvent, LogLevel, PipelineStep
from app.models.system_setting import SystemSetting, DEFAULT_HEADSHOT_KEY

__all__ = [
    "Project",
    "Asset",
    "AssetType",
    "Scene",
    "SceneStatus",
    "VALID_TRANSITIONS",
    "ADMIN_TRANSITIONS",
    "TERMINAL_STATUSES",
    "GenerationLog",
    "LogEvent",
    "LogLevel",
    "PipelineStep",
    "SystemSetting",
    "DEFAULT_HEADSHOT_KEY",
]
