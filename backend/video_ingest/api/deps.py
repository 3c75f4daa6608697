from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from video_ingest.core.errors import ErrorKind, ProviderError
from video_ingest.core.security import decode_access_token
from video_ingest.core.settings import Settings, get_settings
from video_ingest.db.session import get_db
from video_ingest.exceptions import ProviderRejected, ProviderUnavailable, QuotaExceeded
from video_ingest.lessons import LessonReader, SqlLessonReader
from video_ingest.progress.hub import ProgressHub
from video_ingest.providers.registry import ProviderRegistry
from video_ingest.services.event_processor import EventProcessor


def token_from_request(request, settings: Settings) -> str | None:
    """Access token from the identity cookie, else an `Authorization: Bearer` header."""
    token = request.cookies.get(settings.access_cookie_name)
    if token:
        return token
    auth = (request.headers.get("authorization") or "").strip()
    scheme, _, value = auth.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


def subject_from_token(token: str | None, settings: Settings) -> str | None:
    if not token:
        return None
    try:
        payload = decode_access_token(token, settings.jwt_secret)
    except ValueError:
        return None
    sub = payload.get("sub")
    return str(sub) if sub else None


async def get_subject_id(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> str:
    token = token_from_request(request, settings)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    subject = subject_from_token(token, settings)
    if subject is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return subject


def get_registry(request: Request) -> ProviderRegistry:
    return request.app.state.registry


def get_hub(request: Request) -> ProgressHub:
    return request.app.state.hub


def get_processor(request: Request) -> EventProcessor:
    return request.app.state.processor


def get_reconciler(request: Request):
    return request.app.state.reconciler


async def get_lesson_reader(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> LessonReader:
    return SqlLessonReader(db, settings.lessons_table)


def http_error_for(e: ProviderError) -> HTTPException:
    if e.kind is ErrorKind.QUOTA_EXCEEDED:
        return QuotaExceeded()
    if e.kind is ErrorKind.TRANSIENT:
        return ProviderUnavailable()
    # auth-failed is our credentials, not the caller's; report it as unavailable.
    if e.kind is ErrorKind.AUTH_FAILED:
        return ProviderUnavailable()
    return ProviderRejected(e.kind.value)
