from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, Float, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from video_ingest.db.base import Base


class LessonVideoRecord(Base):
    __tablename__ = "lesson_video_records"
    __table_args__ = (
        CheckConstraint("playback_id IS NULL OR status = 'ready'", name="ck_lvr_playback_only_when_ready"),
        CheckConstraint(
            "status <> 'ready' OR (asset_id IS NOT NULL AND playback_id IS NOT NULL AND duration_seconds IS NOT NULL)",
            name="ck_lvr_ready_is_complete",
        ),
        CheckConstraint("status <> 'error' OR error_kind IS NOT NULL", name="ck_lvr_error_has_kind"),
        CheckConstraint("processing_progress BETWEEN 0 AND 100", name="ck_lvr_progress_range"),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Stable external lesson identifier (owned by the course catalog).
    lesson_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    provider: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="none", index=True)

    upload_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    asset_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    playback_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    processing_progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    error_kind: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Previous asset kept playable-at-provider until its replacement reaches `ready`.
    superseded_asset_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    superseded_provider: Mapped[str | None] = mapped_column(String(32), nullable=True)

    last_provider_event_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Optimistic concurrency: SQLAlchemy bumps this on every UPDATE and raises
    # StaleDataError when the row changed underneath us.
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __mapper_args__ = {"version_id_col": version}
