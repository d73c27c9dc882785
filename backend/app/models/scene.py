from __future__ import annotations
"""Scene ORM model and the scene generation state machine.

    PENDING → IMAGE_GENERATION → VIDEO_GENERATION → LIPSYNC_APPLICATION → COMPLETED
       └──────────────┴──────────────────┴──────────────────┴──→ FAILED

A status names the stage that runs next; leaving it requires that stage's
artifact to be stored and referenced on the row in the same write.
"""

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.generation_log import PipelineStep
from app.services.errors import InvalidTransition


class SceneStatus(str, enum.Enum):
    """Scene lifecycle statuses."""

    PENDING = "PENDING"
    IMAGE_GENERATION = "IMAGE_GENERATION"
    VIDEO_GENERATION = "VIDEO_GENERATION"
    LIPSYNC_APPLICATION = "LIPSYNC_APPLICATION"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# Ordered pipeline, FAILED excluded
STAGE_ORDER: list[SceneStatus] = [
    SceneStatus.PENDING,
    SceneStatus.IMAGE_GENERATION,
    SceneStatus.VIDEO_GENERATION,
    SceneStatus.LIPSYNC_APPLICATION,
    SceneStatus.COMPLETED,
]

NON_TERMINAL_STATUSES: tuple[SceneStatus, ...] = tuple(STAGE_ORDER[:-1])
TERMINAL_STATUSES: frozenset[SceneStatus] = frozenset(
    {SceneStatus.COMPLETED, SceneStatus.FAILED}
)

# Automatic transitions: one step forward, or to FAILED
VALID_TRANSITIONS: dict[SceneStatus, set[SceneStatus]] = {
    SceneStatus.PENDING: {SceneStatus.IMAGE_GENERATION, SceneStatus.FAILED},
    SceneStatus.IMAGE_GENERATION: {SceneStatus.VIDEO_GENERATION, SceneStatus.FAILED},
    SceneStatus.VIDEO_GENERATION: {SceneStatus.LIPSYNC_APPLICATION, SceneStatus.FAILED},
    SceneStatus.LIPSYNC_APPLICATION: {SceneStatus.COMPLETED, SceneStatus.FAILED},
    SceneStatus.COMPLETED: set(),  # terminal state
    SceneStatus.FAILED: set(),  # terminal for automatic runs
}

# Administrative recovery: FAILED back to a stage, or any stuck stage forward
ADMIN_TRANSITIONS: dict[SceneStatus, set[SceneStatus]] = {
    SceneStatus.FAILED: set(NON_TERMINAL_STATUSES) | {SceneStatus.COMPLETED},
    SceneStatus.COMPLETED: set(),
}
for _i, _status in enumerate(NON_TERMINAL_STATUSES):
    ADMIN_TRANSITIONS[_status] = set(STAGE_ORDER[_i + 1:]) | {SceneStatus.FAILED}

# Log step recorded for the work done while a scene sits in each status
STAGE_STEPS: dict[SceneStatus, PipelineStep] = {
    SceneStatus.PENDING: PipelineStep.AUDIO_GENERATION,
    SceneStatus.IMAGE_GENERATION: PipelineStep.IMAGE_GENERATION,
    SceneStatus.VIDEO_GENERATION: PipelineStep.VIDEO_GENERATION,
    SceneStatus.LIPSYNC_APPLICATION: PipelineStep.LIPSYNC_APPLICATION,
}


def next_status(status: SceneStatus) -> SceneStatus:
    """The status a successful stage advances to."""
    if status not in NON_TERMINAL_STATUSES:
        raise InvalidTransition(f"{status.value} has no next stage")
    return STAGE_ORDER[STAGE_ORDER.index(status) + 1]


def check_transition(
    current: SceneStatus | str,
    target: SceneStatus | str,
    *,
    admin: bool = False,
) -> None:
    """Raise InvalidTransition unless ``current → target`` is allowed."""
    try:
        current = SceneStatus(current)
        target = SceneStatus(target)
    except ValueError as e:
        raise InvalidTransition(str(e)) from e

    table = ADMIN_TRANSITIONS if admin else VALID_TRANSITIONS
    if target not in table.get(current, set()):
        kind = "administrative" if admin else "automatic"
        raise InvalidTransition(
            f"Illegal {kind} transition {current.value} → {target.value}"
        )


class Scene(Base):
    """One headshot + script + voice that becomes a lip-synced video."""

    __tablename__ = "scenes"
    __table_args__ = {
        "mysql_charset": "utf8mb4",
        "mysql_collate": "utf8mb4_unicode_ci",
    }

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: uuid.uuid4().hex[:36],
    )
    project_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Content fields
    dialogue: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    voice_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    environment: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    wardrobe: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    mood_lighting: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    movement: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    camera: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    headshot_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("assets.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Stored artifacts: object key + the URL handed out for it
    audio_key: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    audio_url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    audio_duration: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    image_key: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    image_prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    video_key: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    video_url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    video_prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    lipsync_key: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    lipsync_url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    final_video_url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)

    # Provider / model chosen per stage (preset by the user or filled from config)
    audio_provider: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    audio_model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    image_provider: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    image_model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    video_provider: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    video_model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    lipsync_provider: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    lipsync_model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Pipeline state
    status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=SceneStatus.PENDING.value, index=True
    )
    failed_stage: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    # Timestamps
    created_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True, server_default=func.now()
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True, server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    project = relationship("Project", back_populates="scenes")
    headshot = relationship("Asset", foreign_keys=[headshot_id])
    logs = relationship(
        "GenerationLog",
        back_populates="scene",
        cascade="all, delete-orphan",
        order_by="GenerationLog.id",
    )

    @property
    def is_terminal(self) -> bool:
        return SceneStatus(self.status) in TERMINAL_STATUSES

    def can_transition_to(self, target_status: str, *, admin: bool = False) -> bool:
        """Check if the scene may move to ``target_status``."""
        try:
            check_transition(self.status, target_status, admin=admin)
        except InvalidTransition:
            return False
        return True
