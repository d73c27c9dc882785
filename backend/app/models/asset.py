from __future__ import annotations
"""Asset ORM model: user-supplied reference material (headshots, voices)."""

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class AssetType(str, enum.Enum):
    """Kinds of reference material a scene can point at."""

    HEADSHOT = "HEADSHOT"
    VOICE = "VOICE"
    AUDIO = "AUDIO"


class Asset(Base):
    """A stored object or cloned-voice identifier owned by a project."""

    __tablename__ = "assets"
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
    asset_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AssetType.HEADSHOT.value
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_key: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    content_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    voice_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now()
    )

    # Relationships
    project = relationship("Project", back_populates="assets")
