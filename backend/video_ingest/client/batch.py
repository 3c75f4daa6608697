from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from video_ingest.client.orchestrator import UploadFailed, UploadOrchestrator, UploadStage
from video_ingest.core.errors import ClientInvalidError, ErrorKind

logger = logging.getLogger(__name__)


class ItemStatus(str, enum.Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    # Never attempted because the batch halted on quota.
    SKIPPED = "skipped"


@dataclass
class BatchItem:
    lesson_id: str
    source: bytes | Path
    metadata: dict[str, Any] | None = None
    content_type: str | None = None


@dataclass
class ItemReport:
    lesson_id: str
    status: ItemStatus = ItemStatus.PENDING
    upload_id: str | None = None
    playback_id: str | None = None
    error_kind: str | None = None
    error_message: str | None = None


@dataclass
class BatchReport:
    items: list[ItemReport] = field(default_factory=list)
    halted: bool = False

    @property
    def completed(self) -> int:
        return sum(1 for i in self.items if i.status is ItemStatus.COMPLETED)

    @property
    def failed(self) -> int:
        return sum(1 for i in self.items if i.status is ItemStatus.ERROR)


class BatchCoordinator:
    """
    Uploads lessons one at a time through an UploadOrchestrator.

    A failing item is recorded and the batch moves on. The one exception is
    quota-exceeded: every later item would hit the same limit, so remaining
    items are marked skipped unless `halt_on_quota` is False.
    """

    def __init__(
        self,
        orchestrator: UploadOrchestrator,
        *,
        halt_on_quota: bool = True,
        on_update: Callable[[ItemReport], None] | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._halt_on_quota = halt_on_quota
        self._on_update = on_update

    def _set(self, report: ItemReport, status: ItemStatus) -> None:
        report.status = status
        if self._on_update is not None:
            self._on_update(report)

    async def run(self, items: Sequence[BatchItem]) -> BatchReport:
        batch = BatchReport(items=[ItemReport(lesson_id=item.lesson_id) for item in items])

        for index, (item, report) in enumerate(zip(items, batch.items)):
            if batch.halted:
                self._set(report, ItemStatus.SKIPPED)
                continue
            await self._run_item(item, report)
            if report.error_kind == ErrorKind.QUOTA_EXCEEDED.value and self._halt_on_quota:
                logger.warning("Provider quota exceeded at item %d (lesson %s); halting batch", index, item.lesson_id)
                batch.halted = True

        logger.info(
            "Batch finished: %d completed, %d failed, %d skipped",
            batch.completed,
            batch.failed,
            sum(1 for i in batch.items if i.status is ItemStatus.SKIPPED),
        )
        return batch

    async def _run_item(self, item: BatchItem, report: ItemReport) -> None:
        def on_stage(lesson_id: str, stage: UploadStage) -> None:
            if lesson_id != item.lesson_id:
                return
            if stage is UploadStage.UPLOADING:
                self._set(report, ItemStatus.UPLOADING)
            elif stage is UploadStage.PROCESSING:
                self._set(report, ItemStatus.PROCESSING)

        self._set(report, ItemStatus.UPLOADING)
        try:
            result = await self._orchestrator.upload(
                item.lesson_id,
                item.source,
                metadata=item.metadata,
                content_type=item.content_type,
                on_stage=on_stage,
            )
        except UploadFailed as e:
            report.upload_id = e.upload_id
            self._fail(report, e.kind, e.message)
            return
        except ClientInvalidError as e:
            self._fail(report, ErrorKind.CLIENT_INVALID.value, str(e))
            return
        except (httpx.HTTPError, OSError) as e:
            self._fail(report, ErrorKind.TRANSIENT.value, str(e))
            return

        report.upload_id = result.upload_id
        report.playback_id = result.playback_id
        self._set(report, ItemStatus.COMPLETED)

    def _fail(self, report: ItemReport, kind: str, message: str) -> None:
        report.error_kind = kind
        report.error_message = message
        logger.info("Lesson %s failed: %s (%s)", report.lesson_id, message, kind)
        self._set(report, ItemStatus.ERROR)
