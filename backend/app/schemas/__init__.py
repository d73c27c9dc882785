"""Pydantic v2 schemas package."""

from app.schemas.project import (
    AssetCreate,
    AssetRead,
    DefaultHeadshotUpdate,
    ProjectCreate,
    ProjectRead,
)
from app.schemas.scene import (
    CheckJobRequest,
    GenerationLogRead,
    RecoverRequest,
    RecoveryRead,
    SceneActionResponse,
    SceneCreate,
    SceneFailRequest,
    SceneRead,
    SceneResetRequest,
    SceneStatusRead,
    WebhookAck,
)

__all__ = [
    "AssetCreate",
    "AssetRead",
    "DefaultHeadshotUpdate",
    "ProjectCreate",
    "ProjectRead",
    "CheckJobRequest",
    "GenerationLogRead",
    "RecoverRequest",
    "RecoveryRead",
    "SceneActionResponse",
    "SceneCreate",
    "SceneFailRequest",
    "SceneRead",
    "SceneResetRequest",
    "SceneStatusRead",
    "WebhookAck",
]
