from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from video_ingest.constants import EventKind, VideoStatus
from video_ingest.core.errors import ErrorKind, ProviderError
from video_ingest.core.settings import Settings
from video_ingest.db.models.lesson_video_record import LessonVideoRecord
from video_ingest.db.models.provider_event import ProviderEvent
from video_ingest.db.models.upload_session import UploadSession
from video_ingest.db.session import get_session_maker
from video_ingest.progress.events import StateChanged
from video_ingest.providers.base import ParsedEvent
from video_ingest.providers.registry import ProviderRegistry
from video_ingest.services.state_machine import Decision, EventFacts, Outcome, RecordState, decide

logger = logging.getLogger(__name__)

_BEFORE_PROCESSING = (VideoStatus.NONE.value, VideoStatus.AWAITING_UPLOAD.value, VideoStatus.UPLOADING.value)


@dataclass(frozen=True)
class TransitionResult:
    outcome: Outcome
    reason: str
    lesson_id: str | None = None
    change: StateChanged | None = None
    # (provider kind, asset id) of a replaced asset that can now be deleted.
    superseded_asset: tuple[str, str] | None = None


def synthetic_event(
    *,
    provider: str,
    kind: EventKind,
    source: str,
    upload_id: str | None = None,
    asset_id: str | None = None,
    progress: int | None = None,
    error_kind: str | None = None,
    error_message: str | None = None,
) -> ParsedEvent:
    """An event the service derives itself (reconciliation, client hints, deletes)."""
    return ParsedEvent(
        provider=provider,
        event_id=f"{source}:{uuid4().hex}",
        provider_type=source,
        kind=kind,
        upload_id=upload_id,
        asset_id=asset_id,
        progress=progress,
        error_kind=error_kind,
        error_message=error_message,
    )


def apply_changes(record: LessonVideoRecord, changes: dict[str, Any]) -> None:
    for name, value in changes.items():
        setattr(record, name, value.value if isinstance(value, enum.Enum) else value)


class EventProcessor:
    """
    Applies provider (and synthetic) events to lesson video records.

    Every record write goes through here. A provider event is inserted into the
    audit log and the record is updated in the same transaction, so a retry of
    a duplicate delivery finds the event row and stops. Version conflicts are
    retried a bounded number of times.
    """

    def __init__(
        self,
        settings: Settings,
        registry: ProviderRegistry,
        *,
        session_maker: Callable[[], async_sessionmaker[AsyncSession]] = get_session_maker,
        hub=None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._session_maker = session_maker
        self._hub = hub
        self._clock = clock
        # Set by the reconciliation worker so describe failures get re-checked first.
        self.prioritize: Callable[[str], None] | None = None

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def process(
        self,
        event: ParsedEvent,
        *,
        record_event: bool = True,
        consume_session: bool = True,
    ) -> TransitionResult:
        retries = int(self._settings.state_machine_max_retries)
        SessionLocal = self._session_maker()
        for attempt in range(1, retries + 1):
            async with SessionLocal() as db:
                try:
                    result = await self._process_once(
                        db, event, record_event=record_event, consume_session=consume_session
                    )
                except StaleDataError:
                    await db.rollback()
                    logger.info(
                        "Version conflict applying %s event %s (attempt %d/%d)",
                        event.provider,
                        event.event_id,
                        attempt,
                        retries,
                    )
                    continue

            self._log_result(event, result)
            if result.change is not None and self._hub is not None:
                await self._hub.publish(result.change)
            return result

        logger.warning("Giving up on %s event %s after %d version conflicts", event.provider, event.event_id, retries)
        return TransitionResult(Outcome.TRANSIENT, "version conflict")

    async def _process_once(
        self,
        db: AsyncSession,
        event: ParsedEvent,
        *,
        record_event: bool,
        consume_session: bool,
    ) -> TransitionResult:
        event_row_id: UUID | None = None
        if record_event:
            event_row_id = await self._insert_event(db, event)
            if event_row_id is None:
                await db.rollback()
                return TransitionResult(Outcome.DUPLICATE, "event already received")

        if event.kind is None:
            await self._finish_event(db, event_row_id, Outcome.IGNORED, "event type not tracked", None)
            await db.commit()
            return TransitionResult(Outcome.IGNORED, "event type not tracked")

        session, record = await self._locate(db, event)
        if record is None:
            await self._finish_event(db, event_row_id, Outcome.UNMATCHED, "no lesson video record", None)
            await db.commit()
            return TransitionResult(Outcome.UNMATCHED, "no lesson video record")

        facts = EventFacts(
            kind=event.kind,
            upload_id=event.upload_id,
            asset_id=event.asset_id,
            progress=event.progress,
            error_kind=event.error_kind,
            error_message=event.error_message,
            upload_superseded=session is not None and session.superseded_by is not None,
            upload_session_active=session is not None and session.superseded_by is None and not session.consumed,
            asset_superseded=(
                event.asset_id is not None
                and event.asset_id == record.superseded_asset_id
                and event.asset_id != record.asset_id
            ),
        )
        if consume_session and session is not None and not session.consumed and session.superseded_by is None:
            session.consumed = True
            session.consumed_at = self._now()

        decision = decide(RecordState.from_record(record), facts)
        if decision.needs_playback:
            lesson_id = record.lesson_id
            resolved = await self._resolve_playback(event, decision, lesson_id)
            if resolved is None:
                # The event row is rolled back too, so the provider's redelivery is not a duplicate.
                await db.rollback()
                change = await self._hold_in_processing(db, lesson_id, decision.changes["asset_id"])
                return TransitionResult(
                    Outcome.TRANSIENT, "playback not resolvable yet", lesson_id=lesson_id, change=change
                )
            decision = resolved

        superseded: tuple[str, str] | None = None
        if decision.applied:
            apply_changes(record, decision.changes)
            if record_event:
                record.last_provider_event_at = event.provider_timestamp or self._now()
            if record.status == VideoStatus.READY.value and record.superseded_asset_id:
                superseded = (record.superseded_provider or record.provider, record.superseded_asset_id)
                record.superseded_asset_id = None
                record.superseded_provider = None
            await db.flush()

        await self._finish_event(db, event_row_id, decision.outcome, decision.reason, record.lesson_id)
        await db.commit()

        change = StateChanged.from_record(record) if decision.applied else None
        return TransitionResult(
            decision.outcome,
            decision.reason,
            lesson_id=record.lesson_id,
            change=change,
            superseded_asset=superseded,
        )

    async def _hold_in_processing(self, db: AsyncSession, lesson_id: str, asset_id: str | None) -> StateChanged | None:
        """An asset that exists but cannot be described yet still means the upload is done."""
        res = await db.execute(select(LessonVideoRecord).where(LessonVideoRecord.lesson_id == lesson_id))
        record = res.scalar_one_or_none()
        if record is None or record.status not in _BEFORE_PROCESSING:
            return None
        apply_changes(record, {"status": VideoStatus.PROCESSING, "asset_id": asset_id or record.asset_id})
        await db.commit()
        return StateChanged.from_record(record)

    async def _insert_event(self, db: AsyncSession, event: ParsedEvent) -> UUID | None:
        stmt = (
            pg_insert(ProviderEvent)
            .values(
                id=uuid4(),
                provider=event.provider,
                event_id=event.event_id,
                kind=event.kind.value if event.kind is not None else event.provider_type[:64],
                provider_timestamp=event.provider_timestamp,
                upload_id=event.upload_id,
                asset_id=event.asset_id,
                progress=event.progress,
                error_kind=event.error_kind,
                raw_payload=event.raw_payload,
            )
            .on_conflict_do_nothing(constraint="uq_provider_events_provider_event_id")
            .returning(ProviderEvent.id)
        )
        res = await db.execute(stmt)
        return res.scalar_one_or_none()

    async def _finish_event(
        self,
        db: AsyncSession,
        event_row_id: UUID | None,
        outcome: Outcome,
        reason: str,
        lesson_id: str | None,
    ) -> None:
        if event_row_id is None:
            return
        await db.execute(
            update(ProviderEvent)
            .where(ProviderEvent.id == event_row_id)
            .values(outcome=outcome.value, outcome_reason=reason[:500], lesson_id=lesson_id)
        )

    async def _locate(
        self, db: AsyncSession, event: ParsedEvent
    ) -> tuple[UploadSession | None, LessonVideoRecord | None]:
        session: UploadSession | None = None
        record: LessonVideoRecord | None = None

        if event.upload_id:
            res = await db.execute(select(UploadSession).where(UploadSession.upload_id == event.upload_id))
            session = res.scalar_one_or_none()
            if session is not None:
                res = await db.execute(
                    select(LessonVideoRecord).where(LessonVideoRecord.lesson_id == session.lesson_id)
                )
                record = res.scalar_one_or_none()
            if record is None:
                res = await db.execute(
                    select(LessonVideoRecord).where(LessonVideoRecord.upload_id == event.upload_id)
                )
                record = res.scalar_one_or_none()

        if record is None and event.asset_id:
            res = await db.execute(
                select(LessonVideoRecord)
                .where(
                    or_(
                        LessonVideoRecord.asset_id == event.asset_id,
                        LessonVideoRecord.superseded_asset_id == event.asset_id,
                    )
                )
                .limit(1)
            )
            record = res.scalar_one_or_none()

        return session, record

    async def _resolve_playback(self, event: ParsedEvent, decision: Decision, lesson_id: str) -> Decision | None:
        asset_id = decision.changes["asset_id"]
        provider = self._registry.get(event.provider)
        try:
            descriptor = await provider.describe_playback(asset_id)
        except ProviderError as e:
            if e.kind in (ErrorKind.PERMANENT, ErrorKind.NOT_FOUND):
                logger.warning("Playback for %s asset %s cannot be resolved: %s", event.provider, asset_id, e.message)
                return Decision(
                    Outcome.APPLIED,
                    "playback could not be resolved",
                    {
                        "status": VideoStatus.ERROR,
                        "asset_id": asset_id,
                        "playback_id": None,
                        "error_kind": ErrorKind.PERMANENT_DESCRIBE_FAILURE.value,
                        "error_message": e.message,
                    },
                )
            logger.warning(
                "Describing %s asset %s failed (%s); leaving lesson %s for reconciliation",
                event.provider,
                asset_id,
                e.kind.value,
                lesson_id,
            )
            if self.prioritize is not None:
                self.prioritize(lesson_id)
            return None

        changes = dict(decision.changes)
        changes["playback_id"] = descriptor.playback_id
        changes["duration_seconds"] = float(descriptor.duration_seconds)
        return Decision(decision.outcome, decision.reason, changes)

    def _log_result(self, event: ParsedEvent, result: TransitionResult) -> None:
        kind = event.kind.value if event.kind is not None else event.provider_type
        if result.outcome is Outcome.APPLIED:
            logger.info(
                "Applied %s event %s (%s) to lesson %s -> %s v%s",
                event.provider,
                event.event_id,
                kind,
                result.lesson_id,
                result.change.status if result.change else "?",
                result.change.version if result.change else "?",
            )
        else:
            logger.info(
                "%s %s event %s (%s) lesson=%s: %s",
                result.outcome.value.capitalize(),
                event.provider,
                event.event_id,
                kind,
                result.lesson_id,
                result.reason,
            )
