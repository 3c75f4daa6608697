"""
Move lessons stored on the legacy object-store path to managed streaming.

The managed provider pulls nothing itself: we mint a direct upload for the
lesson and stream the stored source object into it. From there the normal
webhook path drives the record, and the old asset is deleted once the new
one is ready (it is parked as the record's superseded asset).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from video_ingest.constants import ProviderKind, VideoStatus
from video_ingest.core.errors import ProviderError
from video_ingest.core.settings import Settings
from video_ingest.db.models.lesson_video_record import LessonVideoRecord
from video_ingest.exceptions import VideoNotReady, VideoRecordNotFound
from video_ingest.lessons import LessonReader
from video_ingest.providers.object_store import ObjectStoreProvider
from video_ingest.providers.registry import ProviderRegistry
from video_ingest.services.upload_sessions import SessionGrant, UploadSessionService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MigrationPlan:
    # started / in_progress / already_migrated
    status: str
    grant: SessionGrant | None = None
    source_asset_id: str | None = None


async def plan_migration(
    db: AsyncSession,
    registry: ProviderRegistry,
    lessons: LessonReader,
    settings: Settings,
    lesson_id: str,
) -> MigrationPlan:
    res = await db.execute(select(LessonVideoRecord).where(LessonVideoRecord.lesson_id == lesson_id))
    record = res.scalar_one_or_none()
    if record is None:
        raise VideoRecordNotFound()

    sessions = UploadSessionService(db, registry, lessons, settings)
    managed = ProviderKind.MANAGED_STREAM.value

    if record.provider == managed:
        migrating = record.superseded_provider == ProviderKind.OBJECT_STORE.value and record.superseded_asset_id
        if not migrating:
            return MigrationPlan("already_migrated")
        source_asset_id = record.superseded_asset_id
        if record.status == VideoStatus.ERROR.value:
            # The replacement failed; the legacy asset is still parked, so start over.
            grant = await sessions.request_session(
                lesson_id,
                metadata={"external_id": lesson_id},
                override=True,
                provider_kind=managed,
            )
            logger.info("Retrying migration of lesson %s from object-store asset %s", lesson_id, source_asset_id)
            return MigrationPlan("started", grant=grant, source_asset_id=source_asset_id)
        if record.status != VideoStatus.AWAITING_UPLOAD.value:
            return MigrationPlan("in_progress")
        # The copy never reached the provider; hand out the live session and copy again.
        grant = await sessions.request_session(lesson_id, provider_kind=managed)
        return MigrationPlan("started", grant=grant, source_asset_id=source_asset_id)

    if record.status != VideoStatus.READY.value:
        raise VideoNotReady(record.status)

    source_asset_id = record.asset_id
    grant = await sessions.request_session(
        lesson_id,
        metadata={"external_id": lesson_id},
        override=True,
        provider_kind=managed,
    )
    logger.info("Migrating lesson %s from object-store asset %s", lesson_id, source_asset_id)
    return MigrationPlan("started", grant=grant, source_asset_id=source_asset_id)


async def copy_source_to_upload(
    source: ObjectStoreProvider,
    asset_id: str,
    put_url: str,
    *,
    timeout_seconds: float = 60.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> bool:
    """Stream the stored source object into a direct-upload URL. Returns False on failure."""
    try:
        source_url = await source.source_url(asset_id)
    except ProviderError as e:
        logger.error("Cannot presign source for asset %s: %s", asset_id, e.message)
        return False

    # No read deadline: sources can be several GB.
    timeout = httpx.Timeout(timeout_seconds, read=None, write=None)
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            async with client.stream("GET", source_url) as src:
                if src.status_code >= 400:
                    logger.error("Fetching source for asset %s returned %s", asset_id, src.status_code)
                    return False
                headers = {"Content-Type": src.headers.get("content-type", "application/octet-stream")}
                if src.headers.get("content-length"):
                    headers["Content-Length"] = src.headers["content-length"]
                res = await client.put(put_url, content=src.aiter_bytes(), headers=headers)
    except httpx.HTTPError as e:
        logger.error("Copying source for asset %s failed: %s", asset_id, e)
        return False

    if res.status_code >= 400:
        logger.error("Direct upload rejected the source for asset %s: HTTP %s", asset_id, res.status_code)
        return False
    logger.info("Copied object-store source %s to managed upload", asset_id)
    return True
