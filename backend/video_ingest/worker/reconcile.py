from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from video_ingest.constants import IN_FLIGHT_STATUSES, EventKind
from video_ingest.core.errors import ErrorKind, ProviderError
from video_ingest.core.settings import Settings
from video_ingest.db.models.lesson_video_record import LessonVideoRecord
from video_ingest.db.session import get_session_maker
from video_ingest.providers.object_store import ObjectStoreProvider
from video_ingest.providers.registry import ProviderRegistry
from video_ingest.services.deletion import delete_with_retries
from video_ingest.services.event_processor import EventProcessor, TransitionResult, synthetic_event
from video_ingest.services.state_machine import Outcome

logger = logging.getLogger(__name__)

_UPLOAD_FAILED_STATES = ("errored", "cancelled", "timed_out")


@dataclass(frozen=True)
class _Candidate:
    lesson_id: str
    provider: str
    status: str
    upload_id: str | None
    asset_id: str | None
    updated_at: datetime


@dataclass
class ReconcileReport:
    scanned: int = 0
    applied: int = 0
    abandoned: int = 0
    skipped: int = 0
    failed: int = 0
    outcomes: dict[str, str] = field(default_factory=dict)


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class ReconciliationWorker:
    """
    Re-synchronises in-flight lesson videos with the provider.

    A record qualifies once it has sat in uploading/processing longer than the
    grace period. The provider's view is turned into synthetic events that go
    through the same state machine as webhooks.
    """

    def __init__(
        self,
        settings: Settings,
        registry: ProviderRegistry,
        processor: EventProcessor,
        *,
        session_maker: Callable[[], async_sessionmaker[AsyncSession]] = get_session_maker,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._processor = processor
        self._session_maker = session_maker
        self._clock = clock
        self._priority: set[str] = set()
        self._encode_requested: set[str] = set()
        processor.prioritize = self.prioritize

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def prioritize(self, lesson_id: str) -> None:
        self._priority.add(lesson_id)

    async def run_forever(self, stop: asyncio.Event) -> None:
        period = float(self._settings.reconcile_period_seconds)
        logger.info("Reconciliation worker started (period=%ss)", period)
        while not stop.is_set():
            try:
                report = await self.run_once()
                if report.scanned:
                    logger.info(
                        "Reconciled %d record(s): applied=%d abandoned=%d skipped=%d failed=%d",
                        report.scanned,
                        report.applied,
                        report.abandoned,
                        report.skipped,
                        report.failed,
                    )
            except Exception:
                logger.exception("Reconciliation pass failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=period)
            except asyncio.TimeoutError:
                pass
        logger.info("Reconciliation worker stopped")

    async def run_once(self) -> ReconcileReport:
        report = ReconcileReport()
        priority, self._priority = self._priority, set()
        seen: set[str] = set()

        for candidate in await self._load(lesson_ids=sorted(priority)):
            seen.add(candidate.lesson_id)
            await self._reconcile_and_count(candidate, report)

        cutoff = self._now() - timedelta(seconds=int(self._settings.reconcile_grace_seconds))
        for candidate in await self._load(stale_before=cutoff):
            if candidate.lesson_id in seen:
                continue
            await self._reconcile_and_count(candidate, report)
        return report

    async def reconcile_lesson(self, lesson_id: str) -> str:
        """Run one pass for a single lesson regardless of the grace period."""
        candidates = await self._load(lesson_ids=[lesson_id])
        if not candidates:
            return "not-in-flight"
        report = ReconcileReport()
        await self._reconcile_and_count(candidates[0], report)
        return report.outcomes.get(lesson_id, "skipped")

    async def _load(
        self,
        *,
        lesson_ids: list[str] | None = None,
        stale_before: datetime | None = None,
    ) -> list[_Candidate]:
        if lesson_ids is not None and not lesson_ids:
            return []
        stmt = select(LessonVideoRecord).where(LessonVideoRecord.status.in_([s.value for s in IN_FLIGHT_STATUSES]))
        if lesson_ids is not None:
            stmt = stmt.where(LessonVideoRecord.lesson_id.in_(lesson_ids))
        if stale_before is not None:
            stmt = stmt.where(LessonVideoRecord.updated_at < stale_before)
        stmt = stmt.order_by(LessonVideoRecord.updated_at.asc()).limit(int(self._settings.reconcile_batch_size))

        SessionLocal = self._session_maker()
        async with SessionLocal() as db:
            res = await db.execute(stmt)
            return [
                _Candidate(
                    lesson_id=r.lesson_id,
                    provider=r.provider,
                    status=r.status,
                    upload_id=r.upload_id,
                    asset_id=r.asset_id,
                    updated_at=_aware(r.updated_at),
                )
                for r in res.scalars().all()
            ]

    async def _reconcile_and_count(self, candidate: _Candidate, report: ReconcileReport) -> None:
        report.scanned += 1
        try:
            outcome = await self._reconcile(candidate)
        except ProviderError as e:
            if e.retryable:
                logger.warning("Provider unavailable reconciling lesson %s: %s", candidate.lesson_id, e.message)
            else:
                logger.error(
                    "Provider refused reconciliation of lesson %s (%s): %s",
                    candidate.lesson_id,
                    e.kind.value,
                    e.message,
                )
            outcome = "failed"
        report.outcomes[candidate.lesson_id] = outcome
        if outcome == "applied":
            report.applied += 1
        elif outcome == "abandoned":
            report.abandoned += 1
        elif outcome == "failed":
            report.failed += 1
        else:
            report.skipped += 1

    async def _apply(self, candidate: _Candidate, kind: EventKind, **facts) -> TransitionResult:
        event = synthetic_event(
            provider=candidate.provider,
            kind=kind,
            source="reconcile",
            upload_id=candidate.upload_id,
            **facts,
        )
        result = await self._processor.process(event, record_event=False)
        if result.superseded_asset is not None:
            provider_kind, asset_id = result.superseded_asset
            await delete_with_retries(self._registry.get(provider_kind), asset_id)
        return result

    def _abandoned(self, candidate: _Candidate) -> bool:
        age = self._now() - candidate.updated_at
        return age > timedelta(seconds=int(self._settings.reconcile_abandon_seconds))

    async def _abandon(self, candidate: _Candidate, reason: str) -> str:
        logger.warning("Abandoning lesson %s video: %s", candidate.lesson_id, reason)
        result = await self._apply(
            candidate,
            EventKind.ASSET_ERRORED,
            asset_id=candidate.asset_id,
            error_kind=ErrorKind.ABANDONED.value,
            error_message=reason,
        )
        return "abandoned" if result.outcome is Outcome.APPLIED else result.outcome.value

    async def _reconcile(self, candidate: _Candidate) -> str:
        provider = self._registry.get(candidate.provider)
        asset_id = candidate.asset_id

        if asset_id is None:
            if not candidate.upload_id:
                return "skipped"
            try:
                lookup = await provider.lookup_upload(candidate.upload_id)
            except ProviderError as e:
                if e.kind is ErrorKind.NOT_FOUND and self._abandoned(candidate):
                    return await self._abandon(candidate, "provider does not know the upload")
                if e.kind is ErrorKind.NOT_FOUND:
                    return "skipped"
                raise

            if lookup.asset_id is None:
                if lookup.state in _UPLOAD_FAILED_STATES:
                    result = await self._apply(
                        candidate,
                        EventKind.ASSET_ERRORED,
                        error_kind=f"upload-{lookup.state.replace('_', '-')}",
                        error_message=f"provider reports the upload as {lookup.state}",
                    )
                    return result.outcome.value
                if self._abandoned(candidate):
                    return await self._abandon(candidate, f"upload still {lookup.state} past the abandon window")
                return "skipped"

            asset_id = lookup.asset_id
            await self._apply(candidate, EventKind.UPLOAD_ASSET_READY, asset_id=asset_id)

        try:
            state = await provider.asset_state(asset_id)
        except ProviderError as e:
            if e.kind is not ErrorKind.NOT_FOUND:
                raise
            if self._abandoned(candidate):
                return await self._abandon(candidate, "provider does not know the asset")
            return "skipped"

        if state.state == "ready":
            result = await self._apply(candidate, EventKind.ASSET_READY, asset_id=asset_id)
            return result.outcome.value
        if state.state == "errored":
            result = await self._apply(
                candidate,
                EventKind.ASSET_ERRORED,
                asset_id=asset_id,
                error_kind=state.error_kind,
                error_message=state.error_message,
            )
            return result.outcome.value

        if state.progress is not None:
            await self._apply(candidate, EventKind.PROGRESS, asset_id=asset_id, progress=state.progress)

        # Compatibility path: the self-hosted encoder may have missed the upload.
        if isinstance(provider, ObjectStoreProvider) and asset_id not in self._encode_requested:
            if await provider.request_encode(asset_id):
                self._encode_requested.add(asset_id)
                return "encode-requested"

        if self._abandoned(candidate):
            return await self._abandon(candidate, f"asset still {state.state} past the abandon window")
        return "skipped"
