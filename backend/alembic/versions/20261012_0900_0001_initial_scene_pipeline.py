"""Initial scene pipeline schema: projects, assets, scenes, generation_logs, system_settings

Revision ID: 0001
Revises: None
Create Date: 2026-10-12 09:00:00
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_MYSQL = {"mysql_charset": "utf8mb4", "mysql_collate": "utf8mb4_unicode_ci"}


def upgrade() -> None:
    op.create_table(
        "projects",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
        **_MYSQL,
    )

    op.create_table(
        "assets",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("project_id", sa.String(36), sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
        sa.Column("asset_type", sa.String(20), nullable=False, comment="HEADSHOT | VOICE | AUDIO"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("storage_key", sa.String(1024), nullable=True),
        sa.Column("url", sa.String(2048), nullable=True),
        sa.Column("content_type", sa.String(100), nullable=True),
        sa.Column("voice_id", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        **_MYSQL,
    )
    op.create_index("ix_assets_project_id", "assets", ["project_id"])

    op.create_table(
        "scenes",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("project_id", sa.String(36), sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
        sa.Column("sequence_order", sa.Integer, nullable=False, server_default="0"),
        sa.Column("dialogue", sa.Text, nullable=True),
        sa.Column("voice_id", sa.String(100), nullable=True),
        sa.Column("environment", sa.String(255), nullable=True),
        sa.Column("wardrobe", sa.String(255), nullable=True),
        sa.Column("mood_lighting", sa.String(255), nullable=True),
        sa.Column("movement", sa.String(255), nullable=True),
        sa.Column("camera", sa.String(255), nullable=True),
        sa.Column("headshot_id", sa.String(36), sa.ForeignKey("assets.id", ondelete="SET NULL"), nullable=True),
        sa.Column("audio_key", sa.String(1024), nullable=True),
        sa.Column("audio_url", sa.String(2048), nullable=True),
        sa.Column("audio_duration", sa.Float, nullable=True),
        sa.Column("image_key", sa.String(1024), nullable=True),
        sa.Column("image_url", sa.String(2048), nullable=True),
        sa.Column("image_prompt", sa.Text, nullable=True),
        sa.Column("video_key", sa.String(1024), nullable=True),
        sa.Column("video_url", sa.String(2048), nullable=True),
        sa.Column("video_prompt", sa.Text, nullable=True),
        sa.Column("lipsync_key", sa.String(1024), nullable=True),
        sa.Column("lipsync_url", sa.String(2048), nullable=True),
        sa.Column("final_video_url", sa.String(2048), nullable=True),
        *[
            sa.Column(f"{stage}_{field}", sa.String(50 if field == "provider" else 100), nullable=True)
            for stage in ("audio", "image", "video", "lipsync")
            for field in ("provider", "model")
        ],
        sa.Column("status", sa.String(50), nullable=False, server_default="PENDING"),
        sa.Column("failed_stage", sa.String(50), nullable=True),
        sa.Column("failure_reason", sa.Text, nullable=True),
        sa.Column("cancel_requested", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
        **_MYSQL,
    )
    op.create_index("ix_scenes_project_id", "scenes", ["project_id"])
    op.create_index("ix_scenes_status", "scenes", ["status"])

    op.create_table(
        "generation_logs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("scene_id", sa.String(36), sa.ForeignKey("scenes.id", ondelete="CASCADE"), nullable=False),
        sa.Column("project_id", sa.String(36), nullable=False),
        sa.Column("step", sa.String(50), nullable=False),
        sa.Column("level", sa.String(10), nullable=False, comment="DEBUG | INFO | WARN | ERROR"),
        sa.Column("event", sa.String(30), nullable=True),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("provider", sa.String(50), nullable=True),
        sa.Column("job_id", sa.String(255), nullable=True),
        sa.Column("attempt", sa.Integer, nullable=True),
        sa.Column("error_code", sa.String(50), nullable=True),
        sa.Column("details", sa.JSON, nullable=True),
        sa.Column("duration_ms", sa.Integer, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        **_MYSQL,
    )
    op.create_index("ix_generation_logs_scene_id", "generation_logs", ["scene_id"])
    op.create_index("ix_generation_logs_project_id", "generation_logs", ["project_id"])
    op.create_index("ix_generation_logs_job_id", "generation_logs", ["job_id"])

    op.create_table(
        "system_settings",
        sa.Column("key", sa.String(100), primary_key=True),
        sa.Column("value", sa.Text, nullable=True),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
        **_MYSQL,
    )


def downgrade() -> None:
    op.drop_table("system_settings")
    op.drop_index("ix_generation_logs_job_id", table_name="generation_logs")
    op.drop_index("ix_generation_logs_project_id", table_name="generation_logs")
    op.drop_index("ix_generation_logs_scene_id", table_name="generation_logs")
    op.drop_table("generation_logs")
    op.drop_index("ix_scenes_status", table_name="scenes")
    op.drop_index("ix_scenes_project_id", table_name="scenes")
    op.drop_table("scenes")
    op.drop_index("ix_assets_project_id", table_name="assets")
    op.drop_table("assets")
    op.drop_table("projects")
