"""
Video ingest - domain-specific HTTP exceptions.

Each exception carries a preset status code and detail so route handlers only
need to raise them.
"""
from __future__ import annotations

from fastapi import HTTPException, status


# ── Lessons ─────────────────────────────────────────────────────────────────

class LessonNotFound(HTTPException):
    def __init__(self) -> None:
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Lesson not found.",
        )


class LessonClosed(HTTPException):
    def __init__(self) -> None:
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail="Lesson is finalized or archived; uploads are closed.",
        )


class VideoRecordNotFound(HTTPException):
    def __init__(self) -> None:
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No video has been uploaded for this lesson.",
        )


class VideoNotReady(HTTPException):
    def __init__(self, current_status: str) -> None:
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Video is not ready for playback (status: {current_status}).",
        )


# ── Upload sessions ─────────────────────────────────────────────────────────

class SessionConflict(HTTPException):
    def __init__(self, session: dict) -> None:
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": "An upload session is already active for this lesson.", "session": session},
        )


class SessionNotFound(HTTPException):
    def __init__(self) -> None:
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Upload session not found.",
        )


# ── Provider ────────────────────────────────────────────────────────────────

class ProviderUnavailable(HTTPException):
    def __init__(self) -> None:
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Video provider is temporarily unavailable. Please try again.",
        )


class ProviderRejected(HTTPException):
    def __init__(self, error_kind: str) -> None:
        super().__init__(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"message": "Video provider rejected the request.", "errorKind": error_kind},
        )


class QuotaExceeded(HTTPException):
    def __init__(self) -> None:
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"message": "Video provider quota exceeded.", "errorKind": "quota-exceeded"},
        )


# ── Subtitles ───────────────────────────────────────────────────────────────

class SubtitleInvalid(HTTPException):
    def __init__(self, reason: str) -> None:
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid subtitle file: {reason}",
        )


class StorageNotConfigured(HTTPException):
    def __init__(self) -> None:
        super().__init__(
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            detail="Object storage is not configured (missing S3_BUCKET)",
        )
