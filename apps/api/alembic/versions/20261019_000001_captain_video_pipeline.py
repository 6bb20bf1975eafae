"""captain video pipeline schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "captain_videos",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("charter_id", sa.String(), nullable=True),
        sa.Column("original_url", sa.String(), nullable=False),
        sa.Column("blob_key", sa.String(), nullable=True),
        sa.Column("trim_start_sec", sa.Float(), nullable=False, server_default="0"),
        sa.Column("trim_end_sec", sa.Float(), nullable=True),
        sa.Column("original_duration_sec", sa.Float(), nullable=True),
        sa.Column("original_width", sa.Integer(), nullable=True),
        sa.Column("original_height", sa.Integer(), nullable=True),
        sa.Column("processed_duration_sec", sa.Float(), nullable=True),
        sa.Column("processed_width", sa.Integer(), nullable=True),
        sa.Column("processed_height", sa.Integer(), nullable=True),
        sa.Column("process_status", sa.String(), nullable=False, server_default="queued"),
        sa.Column("ready_720p_url", sa.String(), nullable=True),
        sa.Column("normalized_blob_key", sa.String(), nullable=True),
        sa.Column("thumbnail_url", sa.String(), nullable=True),
        sa.Column("thumbnail_blob_key", sa.String(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("last_dispatch_error", sa.String(), nullable=True),
        sa.Column("dispatch_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("did_fallback", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("fallback_reason", sa.String(), nullable=True),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"], ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_captain_videos_owner_id", "captain_videos", ["owner_id"], unique=False)
    op.create_index("ix_captain_videos_charter_id", "captain_videos", ["charter_id"], unique=False)
    op.create_index("ix_captain_videos_process_status", "captain_videos", ["process_status"], unique=False)

    op.create_table(
        "video_telemetry_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("event_name", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="ok"),
        sa.Column("details_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_video_telemetry_events_user_id", "video_telemetry_events", ["user_id"], unique=False)
    op.create_index("ix_video_telemetry_events_event_name", "video_telemetry_events", ["event_name"], unique=False)
    op.create_index("ix_video_telemetry_events_entity_id", "video_telemetry_events", ["entity_id"], unique=False)
    op.create_index("ix_video_telemetry_events_status", "video_telemetry_events", ["status"], unique=False)
    op.create_index("ix_video_telemetry_events_created_at", "video_telemetry_events", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_video_telemetry_events_created_at", table_name="video_telemetry_events")
    op.drop_index("ix_video_telemetry_events_status", table_name="video_telemetry_events")
    op.drop_index("ix_video_telemetry_events_entity_id", table_name="video_telemetry_events")
    op.drop_index("ix_video_telemetry_events_event_name", table_name="video_telemetry_events")
    op.drop_index("ix_video_telemetry_events_user_id", table_name="video_telemetry_events")
    op.drop_table("video_telemetry_events")
    op.drop_index("ix_captain_videos_process_status", table_name="captain_videos")
    op.drop_index("ix_captain_videos_charter_id", table_name="captain_videos")
    op.drop_index("ix_captain_videos_owner_id", table_name="captain_videos")
    op.drop_table("captain_videos")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
