"""
Lesson video pipeline - static constants and enum types.
"""
from __future__ import annotations

import enum


class ProviderKind(str, enum.Enum):
    MANAGED_STREAM = "managed-stream"
    OBJECT_STORE = "object-store"


class VideoStatus(str, enum.Enum):
    NONE = "none"
    AWAITING_UPLOAD = "awaiting-upload"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


class EventKind(str, enum.Enum):
    UPLOAD_CREATED = "upload.created"
    UPLOAD_ASSET_READY = "upload.asset_ready"
    ASSET_READY = "asset.ready"
    ASSET_ERRORED = "asset.errored"
    ASSET_DELETED = "asset.deleted"
    PROGRESS = "progress"


TERMINAL_STATUSES = frozenset({VideoStatus.READY, VideoStatus.ERROR})

# Statuses the reconciliation worker re-checks against the provider.
IN_FLIGHT_STATUSES = frozenset({VideoStatus.UPLOADING, VideoStatus.PROCESSING})

# Statuses that hold the lesson's single active upload slot.
ACTIVE_UPLOAD_STATUSES = frozenset({VideoStatus.AWAITING_UPLOAD, VideoStatus.UPLOADING})

# Lesson statuses (owned by the course catalog) that close a lesson for uploads.
CLOSED_LESSON_STATUSES = frozenset({"finalized", "archived", "deleted"})

SUBTITLE_FORMATS = ("vtt", "srt")
