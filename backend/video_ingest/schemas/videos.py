from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class UploadUrlRequest(BaseModel):
    # Reject unknown fields so clients fail fast if they send legacy/typo keys.
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    lesson_id: str = Field(min_length=1, max_length=64, alias="lessonId")
    metadata: dict[str, Any] | None = None
    # Supersede a live session instead of getting it back with a 409.
    override: bool = False


class UploadUrlResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(serialization_alias="sessionId")
    lesson_id: str = Field(serialization_alias="lessonId")
    upload_id: str = Field(serialization_alias="uploadId")
    upload_url: str = Field(serialization_alias="uploadUrl")
    expires_at: datetime = Field(serialization_alias="expiresAt")
    provider: str


class VideoStatusResponse(BaseModel):
    lesson_id: str = Field(serialization_alias="lessonId")
    provider: str | None = None
    status: str
    progress: int
    upload_id: str | None = Field(default=None, serialization_alias="uploadId")
    playback_id: str | None = Field(default=None, serialization_alias="playbackId")
    duration_seconds: float | None = Field(default=None, serialization_alias="durationSeconds")
    error_kind: str | None = Field(default=None, serialization_alias="errorKind")
    error_message: str | None = Field(default=None, serialization_alias="errorMessage")
    version: int


class CaptionTrack(BaseModel):
    language_code: str | None = Field(default=None, serialization_alias="languageCode")
    language_name: str | None = Field(default=None, serialization_alias="languageName")
    url: str


class PlaybackResponse(BaseModel):
    lesson_id: str = Field(serialization_alias="lessonId")
    provider: str
    playback_id: str = Field(serialization_alias="playbackId")
    stream_url: str = Field(serialization_alias="streamUrl")
    thumbnail_url: str | None = Field(default=None, serialization_alias="thumbnailUrl")
    duration_seconds: float = Field(serialization_alias="durationSeconds")
    captions: list[CaptionTrack] = Field(default_factory=list)


class SubtitlePublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    lesson_id: str = Field(serialization_alias="lessonId")
    language_code: str = Field(serialization_alias="languageCode")
    language_name: str = Field(serialization_alias="languageName")
    source_format: str = Field(serialization_alias="sourceFormat")
    file_url: str = Field(serialization_alias="fileUrl")
    size_bytes: int = Field(serialization_alias="sizeBytes")
    cue_count: int = Field(serialization_alias="cueCount")
    updated_at: datetime = Field(serialization_alias="updatedAt")


class ProviderEventPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    provider: str
    event_id: str = Field(serialization_alias="eventId")
    kind: str
    provider_timestamp: datetime | None = Field(serialization_alias="providerTimestamp")
    upload_id: str | None = Field(serialization_alias="uploadId")
    asset_id: str | None = Field(serialization_alias="assetId")
    progress: int | None
    error_kind: str | None = Field(serialization_alias="errorKind")
    outcome: str | None
    outcome_reason: str | None = Field(serialization_alias="outcomeReason")
    received_at: datetime = Field(serialization_alias="receivedAt")


class EventPage(BaseModel):
    items: list[ProviderEventPublic]
    limit: int
    offset: int


class MigrationResponse(BaseModel):
    lesson_id: str = Field(serialization_alias="lessonId")
    status: str
    upload_id: str | None = Field(default=None, serialization_alias="uploadId")
