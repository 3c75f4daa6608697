from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from video_ingest.constants import SUBTITLE_FORMATS
from video_ingest.core.settings import Settings
from video_ingest.core.storage import public_object_url, s3_client, safe_key_part
from video_ingest.db.models.lesson_subtitle import LessonSubtitle
from video_ingest.exceptions import LessonNotFound, StorageNotConfigured, SubtitleInvalid
from video_ingest.lessons import LessonReader
from video_ingest.services.captions import parse_webvtt, render_webvtt, srt_to_webvtt

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreparedSubtitle:
    source_format: str
    body: str
    cue_count: int


def subtitle_key(lesson_id: str, language_code: str) -> str:
    return f"lessons/{safe_key_part(lesson_id)}/subtitles/{safe_key_part(language_code.lower())}.vtt"


def prepare_subtitle(filename: str, data: bytes, *, max_bytes: int) -> PreparedSubtitle:
    """Validate an uploaded .vtt/.srt file and normalise it to WebVTT."""
    ext = (filename or "").rsplit(".", 1)[-1].strip().lower() if "." in (filename or "") else ""
    if ext not in SUBTITLE_FORMATS:
        raise SubtitleInvalid("only .vtt and .srt files are accepted")
    if not data:
        raise SubtitleInvalid("file is empty")
    if len(data) > int(max_bytes):
        raise SubtitleInvalid(f"file exceeds {int(max_bytes) // (1024 * 1024)} MB")

    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise SubtitleInvalid("file is not UTF-8 text") from None

    try:
        body = srt_to_webvtt(text) if ext == "srt" else text
        cues = parse_webvtt(body)
    except ValueError as e:
        raise SubtitleInvalid(str(e)) from e
    if not cues:
        raise SubtitleInvalid("no subtitle cues found")

    if ext == "vtt":
        # Re-render so stored files are uniformly formatted.
        body = render_webvtt(cues)
    return PreparedSubtitle(source_format=ext, body=body, cue_count=len(cues))


class SubtitleService:
    def __init__(self, db: AsyncSession, lessons: LessonReader, settings: Settings, *, s3=None) -> None:
        self._db = db
        self._lessons = lessons
        self._settings = settings
        self._s3 = s3

    def _client(self):
        if self._s3 is None:
            self._s3 = s3_client(self._settings)
        return self._s3

    async def upload(
        self,
        lesson_id: str,
        *,
        filename: str,
        data: bytes,
        language_code: str,
        language_name: str,
        uploaded_by: str | None = None,
    ) -> LessonSubtitle:
        """Store (or replace) the lesson's subtitle track for one language."""
        if not self._settings.s3_bucket:
            raise StorageNotConfigured()
        if await self._lessons.get_status(lesson_id) is None:
            raise LessonNotFound()

        prepared = prepare_subtitle(filename, data, max_bytes=self._settings.subtitle_max_bytes)
        language_code = language_code.strip().lower()
        key = subtitle_key(lesson_id, language_code)
        encoded = prepared.body.encode("utf-8")

        await asyncio.to_thread(
            self._client().put_object,
            Bucket=self._settings.s3_bucket,
            Key=key,
            Body=encoded,
            ContentType="text/vtt; charset=utf-8",
        )

        values = {
            "language_name": language_name.strip(),
            "source_format": prepared.source_format,
            "storage_key": key,
            "file_url": public_object_url(self._settings, key),
            "size_bytes": len(encoded),
            "cue_count": prepared.cue_count,
            "uploaded_by": uploaded_by,
        }
        stmt = (
            pg_insert(LessonSubtitle)
            .values(lesson_id=lesson_id, language_code=language_code, **values)
            .on_conflict_do_update(
                constraint="uq_lesson_subtitles_lesson_language",
                set_={**values, "updated_at": func.now()},
            )
            .returning(LessonSubtitle.id)
        )
        subtitle_id = (await self._db.execute(stmt)).scalar_one()
        await self._db.commit()

        logger.info(
            "Stored %s subtitles for lesson %s (%s, %d cues)", language_code, lesson_id, prepared.source_format, prepared.cue_count
        )
        res = await self._db.execute(
            select(LessonSubtitle).where(LessonSubtitle.id == subtitle_id).execution_options(populate_existing=True)
        )
        return res.scalar_one()

    async def list_for_lesson(self, lesson_id: str) -> list[LessonSubtitle]:
        res = await self._db.execute(
            select(LessonSubtitle).where(LessonSubtitle.lesson_id == lesson_id).order_by(LessonSubtitle.language_code)
        )
        return list(res.scalars().all())
