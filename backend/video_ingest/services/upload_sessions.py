from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from video_ingest.constants import CLOSED_LESSON_STATUSES, EventKind, VideoStatus
from video_ingest.core.settings import Settings
from video_ingest.db.models.lesson_video_record import LessonVideoRecord
from video_ingest.db.models.upload_session import UploadSession
from video_ingest.exceptions import LessonClosed, LessonNotFound, ProviderUnavailable, SessionNotFound
from video_ingest.lessons import LessonReader
from video_ingest.progress.events import StateChanged
from video_ingest.providers.base import DirectUpload, ParsedEvent, VideoProvider
from video_ingest.providers.registry import ProviderRegistry
from video_ingest.services.event_processor import apply_changes, synthetic_event
from video_ingest.services.state_machine import RecordState, decide_session_issued, orphaned_asset

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionGrant:
    session: UploadSession
    # True when the lesson already had a live session and it was returned as-is.
    existing: bool
    change: StateChanged | None = None
    # (provider kind, asset id) of an unfinished asset the new session abandoned.
    orphaned_asset: tuple[str, str] | None = None


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def session_payload(session: UploadSession) -> dict[str, Any]:
    return {
        "sessionId": str(session.id),
        "lessonId": session.lesson_id,
        "uploadId": session.upload_id,
        "uploadUrl": session.put_url,
        "expiresAt": _aware(session.expires_at).isoformat(),
        "provider": session.provider,
    }


class UploadSessionService:
    """Issues and tracks per-lesson direct-upload sessions."""

    def __init__(
        self,
        db: AsyncSession,
        registry: ProviderRegistry,
        lessons: LessonReader,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db = db
        self._registry = registry
        self._lessons = lessons
        self._settings = settings
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def request_session(
        self,
        lesson_id: str,
        *,
        metadata: Mapping[str, Any] | None = None,
        override: bool = False,
        provider_kind: str | None = None,
    ) -> SessionGrant:
        lesson_status = await self._lessons.get_status(lesson_id)
        if lesson_status is None:
            raise LessonNotFound()
        if lesson_status in CLOSED_LESSON_STATUSES:
            raise LessonClosed()

        provider = self._registry.get(provider_kind) if provider_kind else self._registry.default()

        if not override:
            current = await self._current_session(lesson_id)
            if current is not None:
                return SessionGrant(current, existing=True)

        upload = await self._mint(provider, lesson_id, metadata, override=override)

        retries = int(self._settings.state_machine_max_retries)
        for attempt in range(1, retries + 1):
            try:
                return await self._issue(provider, lesson_id, upload)
            except IntegrityError:
                await self._db.rollback()
                # Lost a race with a concurrent request for the same lesson.
                winner = await self._active_session(lesson_id)
                if winner is None:
                    raise
                logger.info("Concurrent session request for lesson %s; returning session %s", lesson_id, winner.id)
                return SessionGrant(winner, existing=True)
            except StaleDataError:
                await self._db.rollback()
                logger.info("Record for lesson %s changed while issuing a session (attempt %d)", lesson_id, attempt)
        raise ProviderUnavailable()

    async def _mint(
        self,
        provider: VideoProvider,
        lesson_id: str,
        metadata: Mapping[str, Any] | None,
        *,
        override: bool,
    ) -> DirectUpload:
        if override:
            provider.forget_direct_upload(lesson_id)
        upload = await provider.create_direct_upload(lesson_id, metadata)
        if await self._session_for_upload(upload.upload_id) is not None:
            # The adapter's short-lived cache handed back an upload that already has a session.
            provider.forget_direct_upload(lesson_id)
            upload = await provider.create_direct_upload(lesson_id, metadata)
        return upload

    async def _issue(self, provider: VideoProvider, lesson_id: str, upload: DirectUpload) -> SessionGrant:
        now = self._now()
        session = UploadSession(
            id=uuid4(),
            lesson_id=lesson_id,
            provider=provider.name,
            upload_id=upload.upload_id,
            put_url=upload.put_url,
            issued_at=now,
            expires_at=upload.expires_at,
            consumed=False,
        )

        active = await self._active_session(lesson_id)
        if active is not None:
            active.superseded_by = session.id
            # The FK is deferred; the old row must leave the live set before the new row enters it.
            await self._db.flush()
            logger.info("Superseding upload session %s for lesson %s with %s", active.id, lesson_id, session.id)
        self._db.add(session)

        record = await self._record(lesson_id)
        state = RecordState.from_record(record) if record is not None else None
        orphan = orphaned_asset(state)
        orphan_provider = record.provider if record is not None else provider.name
        decision = decide_session_issued(state, upload_id=upload.upload_id, provider=provider.name)
        if record is None:
            record = LessonVideoRecord(
                lesson_id=lesson_id,
                provider=provider.name,
                status=VideoStatus.NONE.value,
                processing_progress=0,
            )
            self._db.add(record)
        apply_changes(record, decision.changes)
        await self._db.commit()

        logger.info(
            "Issued upload session %s (upload %s) for lesson %s via %s",
            session.id,
            session.upload_id,
            lesson_id,
            provider.name,
        )
        return SessionGrant(
            session,
            existing=False,
            change=StateChanged.from_record(record),
            orphaned_asset=(orphan_provider, orphan) if orphan else None,
        )

    async def _current_session(self, lesson_id: str) -> UploadSession | None:
        """
        The session a repeated request should get back: the live unexpired
        session, or the session of an upload the provider is already working on.
        """
        now = self._now()
        active = await self._active_session(lesson_id)
        if active is not None and _aware(active.expires_at) > now:
            return active

        record = await self._record(lesson_id)
        if record is None or not record.upload_id:
            return None
        in_flight = await self._session_for_upload(record.upload_id)
        if in_flight is None or in_flight.superseded_by is not None:
            return None
        if record.status == VideoStatus.PROCESSING.value:
            return in_flight
        if record.status == VideoStatus.UPLOADING.value and _aware(in_flight.expires_at) > now:
            return in_flight
        return None

    async def _active_session(self, lesson_id: str) -> UploadSession | None:
        res = await self._db.execute(
            select(UploadSession).where(
                UploadSession.lesson_id == lesson_id,
                UploadSession.consumed.is_(False),
                UploadSession.superseded_by.is_(None),
            )
        )
        return res.scalar_one_or_none()

    async def _session_for_upload(self, upload_id: str) -> UploadSession | None:
        res = await self._db.execute(select(UploadSession).where(UploadSession.upload_id == upload_id))
        return res.scalar_one_or_none()

    async def _record(self, lesson_id: str) -> LessonVideoRecord | None:
        res = await self._db.execute(select(LessonVideoRecord).where(LessonVideoRecord.lesson_id == lesson_id))
        return res.scalar_one_or_none()

    async def client_finished(self, session_id: UUID) -> ParsedEvent | None:
        """
        Record the advisory "PUT finished" hint.

        Returns a synthetic upload.created event when the hint can move the
        record out of awaiting-upload; the session itself stays unconsumed so
        the provider's own first event still consumes it.
        """
        session = await self._db.get(UploadSession, session_id)
        if session is None:
            raise SessionNotFound()
        if session.client_finished_at is None:
            session.client_finished_at = self._now()
            await self._db.commit()

        if session.superseded_by is not None:
            return None
        record = await self._record(session.lesson_id)
        if record is None or record.upload_id != session.upload_id:
            return None
        if record.status != VideoStatus.AWAITING_UPLOAD.value:
            return None
        return synthetic_event(
            provider=session.provider,
            kind=EventKind.UPLOAD_CREATED,
            source="client-finished",
            upload_id=session.upload_id,
        )
