from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, Text, func, text
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from video_ingest.db.base import Base


class UploadSession(Base):
    __tablename__ = "upload_sessions"
    __table_args__ = (
        # At most one live (unconsumed, unsuperseded) session per lesson.
        Index(
            "uq_upload_sessions_active_lesson",
            "lesson_id",
            unique=True,
            postgresql_where=text("consumed = false AND superseded_by IS NULL"),
        ),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    lesson_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)

    upload_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    put_url: Mapped[str] = mapped_column(Text, nullable=False)

    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    consumed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    client_finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    superseded_by: Mapped[UUID | None] = mapped_column(
        ForeignKey("upload_sessions.id", ondelete="SET NULL", deferrable=True, initially="DEFERRED"),
        nullable=True,
    )
