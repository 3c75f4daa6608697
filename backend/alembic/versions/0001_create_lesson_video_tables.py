"""Create lesson video pipeline tables

Revision ID: 0001_lesson_video_tables
Revises:
Create Date: 2026-10-19

- lesson_video_records: one row per lesson, versioned for optimistic concurrency
- upload_sessions: direct-upload sessions; a partial unique index allows one live session per lesson
- provider_events: append-only audit log, unique per (provider, event_id) for dedup
- lesson_subtitles: one WebVTT file per (lesson, language)
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
# IMPORTANT: alembic_version.version_num is VARCHAR(32) by default, so keep this <= 32 chars.
revision = "0001_lesson_video_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "lesson_video_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("lesson_id", sa.String(length=64), nullable=False),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default=sa.text("'none'")),
        sa.Column("upload_id", sa.String(length=128), nullable=True),
        sa.Column("asset_id", sa.String(length=128), nullable=True),
        sa.Column("playback_id", sa.String(length=128), nullable=True),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
        sa.Column("processing_progress", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_kind", sa.String(length=64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("superseded_asset_id", sa.String(length=128), nullable=True),
        sa.Column("superseded_provider", sa.String(length=32), nullable=True),
        sa.Column("last_provider_event_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("lesson_id", name="uq_lesson_video_records_lesson_id"),
        sa.CheckConstraint(
            "status IN ('none', 'awaiting-upload', 'uploading', 'processing', 'ready', 'error')",
            name="ck_lvr_status_values",
        ),
        sa.CheckConstraint("playback_id IS NULL OR status = 'ready'", name="ck_lvr_playback_only_when_ready"),
        sa.CheckConstraint(
            "status <> 'ready' OR (asset_id IS NOT NULL AND playback_id IS NOT NULL AND duration_seconds IS NOT NULL)",
            name="ck_lvr_ready_is_complete",
        ),
        sa.CheckConstraint("status <> 'error' OR error_kind IS NOT NULL", name="ck_lvr_error_has_kind"),
        sa.CheckConstraint("processing_progress BETWEEN 0 AND 100", name="ck_lvr_progress_range"),
    )
    op.create_index("ix_lesson_video_records_provider", "lesson_video_records", ["provider"], unique=False)
    op.create_index("ix_lesson_video_records_status", "lesson_video_records", ["status"], unique=False)
    op.create_index("ix_lesson_video_records_upload_id", "lesson_video_records", ["upload_id"], unique=False)
    op.create_index("ix_lesson_video_records_asset_id", "lesson_video_records", ["asset_id"], unique=False)
    # Reconciliation scans in-flight records by age.
    op.create_index(
        "ix_lesson_video_records_in_flight_updated_at",
        "lesson_video_records",
        ["updated_at"],
        unique=False,
        postgresql_where=sa.text("status IN ('uploading', 'processing')"),
    )

    op.create_table(
        "upload_sessions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("lesson_id", sa.String(length=64), nullable=False),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("upload_id", sa.String(length=128), nullable=False),
        sa.Column("put_url", sa.Text(), nullable=False),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("consumed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("client_finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("superseded_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["superseded_by"],
            ["upload_sessions.id"],
            ondelete="SET NULL",
            deferrable=True,
            initially="DEFERRED",
        ),
        sa.UniqueConstraint("upload_id", name="uq_upload_sessions_upload_id"),
        sa.CheckConstraint("superseded_by IS NULL OR superseded_by <> id", name="ck_upload_sessions_not_self"),
    )
    op.create_index("ix_upload_sessions_lesson_id", "upload_sessions", ["lesson_id"], unique=False)
    op.create_index(
        "uq_upload_sessions_active_lesson",
        "upload_sessions",
        ["lesson_id"],
        unique=True,
        postgresql_where=sa.text("consumed = false AND superseded_by IS NULL"),
    )

    op.create_table(
        "provider_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("event_id", sa.String(length=128), nullable=False),
        sa.Column("kind", sa.String(length=64), nullable=False),
        sa.Column("provider_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("upload_id", sa.String(length=128), nullable=True),
        sa.Column("asset_id", sa.String(length=128), nullable=True),
        sa.Column("lesson_id", sa.String(length=64), nullable=True),
        sa.Column("progress", sa.Integer(), nullable=True),
        sa.Column("error_kind", sa.String(length=64), nullable=True),
        sa.Column("outcome", sa.String(length=32), nullable=True),
        sa.Column("outcome_reason", sa.Text(), nullable=True),
        sa.Column("raw_payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("provider", "event_id", name="uq_provider_events_provider_event_id"),
    )
    op.create_index("ix_provider_events_upload_id", "provider_events", ["upload_id"], unique=False)
    op.create_index("ix_provider_events_asset_id", "provider_events", ["asset_id"], unique=False)
    op.create_index("ix_provider_events_lesson_id", "provider_events", ["lesson_id"], unique=False)

    op.create_table(
        "lesson_subtitles",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("lesson_id", sa.String(length=64), nullable=False),
        sa.Column("language_code", sa.String(length=16), nullable=False),
        sa.Column("language_name", sa.String(length=64), nullable=False),
        sa.Column("source_format", sa.String(length=8), nullable=False),
        sa.Column("storage_key", sa.Text(), nullable=False),
        sa.Column("file_url", sa.Text(), nullable=False),
        sa.Column("size_bytes", sa.Integer(), nullable=False),
        sa.Column("cue_count", sa.Integer(), nullable=False),
        sa.Column("uploaded_by", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("lesson_id", "language_code", name="uq_lesson_subtitles_lesson_language"),
        sa.CheckConstraint("source_format IN ('vtt', 'srt')", name="ck_lesson_subtitles_source_format"),
    )
    op.create_index("ix_lesson_subtitles_lesson_id", "lesson_subtitles", ["lesson_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_lesson_subtitles_lesson_id", table_name="lesson_subtitles")
    op.drop_table("lesson_subtitles")

    op.drop_index("ix_provider_events_lesson_id", table_name="provider_events")
    op.drop_index("ix_provider_events_asset_id", table_name="provider_events")
    op.drop_index("ix_provider_events_upload_id", table_name="provider_events")
    op.drop_table("provider_events")

    op.drop_index("uq_upload_sessions_active_lesson", table_name="upload_sessions")
    op.drop_index("ix_upload_sessions_lesson_id", table_name="upload_sessions")
    op.drop_table("upload_sessions")

    op.drop_index("ix_lesson_video_records_in_flight_updated_at", table_name="lesson_video_records")
    op.drop_index("ix_lesson_video_records_asset_id", table_name="lesson_video_records")
    op.drop_index("ix_lesson_video_records_upload_id", table_name="lesson_video_records")
    op.drop_index("ix_lesson_video_records_status", table_name="lesson_video_records")
    op.drop_index("ix_lesson_video_records_provider", table_name="lesson_video_records")
    op.drop_table("lesson_video_records")
