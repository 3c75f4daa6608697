from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from video_ingest.constants import VideoStatus


@dataclass(frozen=True)
class StateChanged:
    lesson_id: str
    version: int
    status: str
    progress: int = 0
    upload_id: str | None = None
    playback_id: str | None = None
    error_kind: str | None = None
    error_message: str | None = None

    @classmethod
    def from_record(cls, record: Any) -> "StateChanged":
        return cls(
            lesson_id=record.lesson_id,
            version=int(record.version),
            status=str(record.status),
            progress=int(record.processing_progress or 0),
            upload_id=record.upload_id,
            playback_id=record.playback_id,
            error_kind=record.error_kind,
            error_message=record.error_message,
        )

    @classmethod
    def empty(cls, lesson_id: str) -> "StateChanged":
        """Snapshot for a lesson that has no video record yet."""
        return cls(lesson_id=lesson_id, version=0, status=VideoStatus.NONE.value)

    @property
    def terminal(self) -> bool:
        return self.status in (VideoStatus.READY.value, VideoStatus.ERROR.value)

    @property
    def frame_type(self) -> str:
        if self.status == VideoStatus.READY.value:
            return "complete"
        if self.status == VideoStatus.ERROR.value:
            return "failed"
        return "progress"

    def to_frame(self) -> dict[str, Any]:
        frame: dict[str, Any] = {
            "type": self.frame_type,
            "lessonId": self.lesson_id,
            "version": self.version,
            "status": self.status,
            "progress": self.progress,
            "uploadId": self.upload_id,
        }
        if self.playback_id:
            frame["playbackId"] = self.playback_id
        # Error details are only surfaced on terminal failures.
        if self.frame_type == "failed":
            frame["errorKind"] = self.error_kind
            frame["errorMessage"] = self.error_message
        return frame
