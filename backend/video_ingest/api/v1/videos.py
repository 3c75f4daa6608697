from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, Query, UploadFile, status
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from video_ingest.api.deps import (
    get_hub,
    get_lesson_reader,
    get_processor,
    get_reconciler,
    get_registry,
    get_subject_id,
    http_error_for,
)
from video_ingest.constants import EventKind, ProviderKind, VideoStatus
from video_ingest.core.errors import ProviderError
from video_ingest.core.settings import Settings, get_settings
from video_ingest.db.models.lesson_video_record import LessonVideoRecord
from video_ingest.db.models.provider_event import ProviderEvent
from video_ingest.db.models.upload_session import UploadSession
from video_ingest.db.session import get_db
from video_ingest.exceptions import SessionConflict, VideoNotReady, VideoRecordNotFound
from video_ingest.lessons import LessonReader
from video_ingest.progress.hub import ProgressHub
from video_ingest.providers.registry import ProviderRegistry
from video_ingest.schemas.videos import (
    CaptionTrack,
    EventPage,
    MigrationResponse,
    PlaybackResponse,
    ProviderEventPublic,
    SubtitlePublic,
    UploadUrlRequest,
    UploadUrlResponse,
    VideoStatusResponse,
)
from video_ingest.services.deletion import delete_with_retries
from video_ingest.services.event_processor import EventProcessor, synthetic_event
from video_ingest.services.migration import copy_source_to_upload, plan_migration
from video_ingest.services.subtitles import SubtitleService
from video_ingest.services.upload_sessions import UploadSessionService, session_payload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/videos", tags=["videos"])


async def _get_record(db: AsyncSession, lesson_id: str) -> LessonVideoRecord | None:
    res = await db.execute(select(LessonVideoRecord).where(LessonVideoRecord.lesson_id == lesson_id))
    return res.scalar_one_or_none()


async def _delete_asset_then_apply(
    processor: EventProcessor,
    registry: ProviderRegistry,
    *,
    provider_kind: str,
    asset_id: str,
    upload_id: str | None,
) -> None:
    provider = registry.get(provider_kind)
    if not await delete_with_retries(provider, asset_id):
        return
    # The provider may or may not call back; apply the deletion either way.
    await processor.process(
        synthetic_event(
            provider=provider_kind,
            kind=EventKind.ASSET_DELETED,
            source="delete",
            upload_id=upload_id,
            asset_id=asset_id,
        ),
        record_event=False,
    )


async def _delete_orphan(registry: ProviderRegistry, provider_kind: str, asset_id: str) -> None:
    await delete_with_retries(registry.get(provider_kind), asset_id)


@router.post("/mux/upload-url", response_model=UploadUrlResponse)
async def create_upload_url(
    body: UploadUrlRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    registry: ProviderRegistry = Depends(get_registry),
    lessons: LessonReader = Depends(get_lesson_reader),
    hub: ProgressHub = Depends(get_hub),
    settings: Settings = Depends(get_settings),
    subject_id: str = Depends(get_subject_id),
) -> UploadUrlResponse:
    """
    Issue (or return) the lesson's direct-upload session.

    A live session is returned with 409 and the session in the body unless
    `override` is set, in which case it is superseded.
    """
    service = UploadSessionService(db, registry, lessons, settings)
    metadata = dict(body.metadata or {})
    metadata.setdefault("creator_id", subject_id)
    metadata.setdefault("external_id", body.lesson_id)
    try:
        grant = await service.request_session(body.lesson_id, metadata=metadata, override=body.override)
    except ProviderError as e:
        logger.warning("Upload session for lesson %s failed: %s (%s)", body.lesson_id, e.message, e.kind.value)
        raise http_error_for(e) from e

    if grant.existing:
        raise SessionConflict(session_payload(grant.session))

    if grant.change is not None:
        await hub.publish(grant.change)
    if grant.orphaned_asset is not None:
        provider_kind, asset_id = grant.orphaned_asset
        background_tasks.add_task(_delete_orphan, registry, provider_kind, asset_id)

    s = grant.session
    return UploadUrlResponse(
        session_id=str(s.id),
        lesson_id=s.lesson_id,
        upload_id=s.upload_id,
        upload_url=s.put_url,
        expires_at=s.expires_at,
        provider=s.provider,
    )


@router.post("/sessions/{session_id}/finished", status_code=status.HTTP_202_ACCEPTED)
async def client_finished(
    session_id: UUID,
    db: AsyncSession = Depends(get_db),
    registry: ProviderRegistry = Depends(get_registry),
    lessons: LessonReader = Depends(get_lesson_reader),
    processor: EventProcessor = Depends(get_processor),
    settings: Settings = Depends(get_settings),
    subject_id: str = Depends(get_subject_id),
) -> dict:
    service = UploadSessionService(db, registry, lessons, settings)
    event = await service.client_finished(session_id)
    if event is None:
        return {"accepted": True, "applied": False}
    result = await processor.process(event, record_event=False, consume_session=False)
    return {"accepted": True, "applied": result.outcome.value == "applied"}


@router.get("/{lesson_id}/status", response_model=VideoStatusResponse)
async def get_status(
    lesson_id: str,
    db: AsyncSession = Depends(get_db),
    subject_id: str = Depends(get_subject_id),
) -> VideoStatusResponse:
    record = await _get_record(db, lesson_id)
    if record is None:
        return VideoStatusResponse(lesson_id=lesson_id, status=VideoStatus.NONE.value, progress=0, version=0)
    return VideoStatusResponse(
        lesson_id=record.lesson_id,
        provider=record.provider,
        status=record.status,
        progress=record.processing_progress,
        upload_id=record.upload_id,
        playback_id=record.playback_id,
        duration_seconds=record.duration_seconds,
        error_kind=record.error_kind,
        error_message=record.error_message,
        version=record.version,
    )


@router.get("/{lesson_id}/playback", response_model=PlaybackResponse)
async def get_playback(
    lesson_id: str,
    db: AsyncSession = Depends(get_db),
    registry: ProviderRegistry = Depends(get_registry),
    lessons: LessonReader = Depends(get_lesson_reader),
    settings: Settings = Depends(get_settings),
    subject_id: str = Depends(get_subject_id),
) -> PlaybackResponse:
    record = await _get_record(db, lesson_id)
    if record is None:
        raise VideoRecordNotFound()
    if record.status != VideoStatus.READY.value or not record.asset_id:
        raise VideoNotReady(record.status)

    try:
        descriptor = await registry.get(record.provider).describe_playback(record.asset_id)
    except ProviderError as e:
        raise http_error_for(e) from e

    captions = [CaptionTrack(url=url) for url in descriptor.captions_urls]
    subtitles = await SubtitleService(db, lessons, settings).list_for_lesson(lesson_id)
    captions.extend(
        CaptionTrack(language_code=s.language_code, language_name=s.language_name, url=s.file_url) for s in subtitles
    )
    return PlaybackResponse(
        lesson_id=lesson_id,
        provider=record.provider,
        playback_id=descriptor.playback_id,
        stream_url=descriptor.stream_url,
        thumbnail_url=descriptor.thumbnail_url,
        duration_seconds=descriptor.duration_seconds,
        captions=captions,
    )


@router.post("/{lesson_id}/subtitle", response_model=SubtitlePublic)
async def upload_subtitle(
    lesson_id: str,
    file: UploadFile = File(...),
    language_code: str = Form(..., alias="languageCode", min_length=2, max_length=16),
    language_name: str = Form(..., alias="languageName", min_length=1, max_length=64),
    db: AsyncSession = Depends(get_db),
    lessons: LessonReader = Depends(get_lesson_reader),
    settings: Settings = Depends(get_settings),
    subject_id: str = Depends(get_subject_id),
):
    # Read one byte past the cap so oversized files are rejected without buffering them whole.
    data = await file.read(int(settings.subtitle_max_bytes) + 1)
    service = SubtitleService(db, lessons, settings)
    return await service.upload(
        lesson_id,
        filename=file.filename or "",
        data=data,
        language_code=language_code,
        language_name=language_name,
        uploaded_by=subject_id,
    )


@router.get("/{lesson_id}/subtitles", response_model=list[SubtitlePublic])
async def list_subtitles(
    lesson_id: str,
    db: AsyncSession = Depends(get_db),
    lessons: LessonReader = Depends(get_lesson_reader),
    settings: Settings = Depends(get_settings),
    subject_id: str = Depends(get_subject_id),
):
    return await SubtitleService(db, lessons, settings).list_for_lesson(lesson_id)


@router.delete("/{lesson_id}/asset", status_code=status.HTTP_202_ACCEPTED)
async def delete_asset(
    lesson_id: str,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    registry: ProviderRegistry = Depends(get_registry),
    processor: EventProcessor = Depends(get_processor),
    subject_id: str = Depends(get_subject_id),
) -> dict:
    record = await _get_record(db, lesson_id)
    if record is None or not record.asset_id:
        raise VideoRecordNotFound()

    background_tasks.add_task(
        _delete_asset_then_apply,
        processor,
        registry,
        provider_kind=record.provider,
        asset_id=record.asset_id,
        upload_id=record.upload_id,
    )
    logger.info("Scheduled deletion of %s asset %s for lesson %s", record.provider, record.asset_id, lesson_id)
    return {"scheduled": True, "assetId": record.asset_id}


@router.get("/{lesson_id}/events", response_model=EventPage)
async def list_events(
    lesson_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    subject_id: str = Depends(get_subject_id),
) -> EventPage:
    upload_ids = select(UploadSession.upload_id).where(UploadSession.lesson_id == lesson_id)
    res = await db.execute(
        select(ProviderEvent)
        .where(or_(ProviderEvent.lesson_id == lesson_id, ProviderEvent.upload_id.in_(upload_ids)))
        .order_by(ProviderEvent.received_at.desc(), ProviderEvent.id.desc())
        .offset(offset)
        .limit(limit)
    )
    items = [ProviderEventPublic.model_validate(e) for e in res.scalars().all()]
    return EventPage(items=items, limit=limit, offset=offset)


@router.post("/{lesson_id}/reconcile")
async def reconcile_lesson(
    lesson_id: str,
    reconciler=Depends(get_reconciler),
    subject_id: str = Depends(get_subject_id),
) -> dict:
    try:
        outcome = await reconciler.reconcile_lesson(lesson_id)
    except ProviderError as e:
        raise http_error_for(e) from e
    return {"lessonId": lesson_id, "outcome": outcome}


@router.post(
    "/{lesson_id}/migrate",
    response_model=MigrationResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def migrate_lesson(
    lesson_id: str,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    registry: ProviderRegistry = Depends(get_registry),
    lessons: LessonReader = Depends(get_lesson_reader),
    hub: ProgressHub = Depends(get_hub),
    settings: Settings = Depends(get_settings),
    subject_id: str = Depends(get_subject_id),
) -> MigrationResponse:
    try:
        plan = await plan_migration(db, registry, lessons, settings, lesson_id)
    except ProviderError as e:
        raise http_error_for(e) from e

    if plan.status != "started" or plan.grant is None or not plan.source_asset_id:
        return MigrationResponse(lesson_id=lesson_id, status=plan.status)

    if plan.grant.change is not None:
        await hub.publish(plan.grant.change)
    if plan.grant.orphaned_asset is not None:
        provider_kind, asset_id = plan.grant.orphaned_asset
        background_tasks.add_task(_delete_orphan, registry, provider_kind, asset_id)
    background_tasks.add_task(
        copy_source_to_upload,
        registry.get(ProviderKind.OBJECT_STORE),
        plan.source_asset_id,
        plan.grant.session.put_url,
        timeout_seconds=float(settings.provider_timeout_seconds),
    )
    return MigrationResponse(lesson_id=lesson_id, status=plan.status, upload_id=plan.grant.session.upload_id)
