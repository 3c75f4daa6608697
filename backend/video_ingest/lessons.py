"""
Read-only view of the course catalog's lessons.

The pipeline never writes lessons; it only needs to know whether one exists
and whether it still accepts uploads.
"""
from __future__ import annotations

from typing import Protocol

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


class LessonReader(Protocol):
    async def get_status(self, lesson_id: str) -> str | None:
        """Lesson status, or None when the lesson does not exist."""
        ...


class SqlLessonReader:
    def __init__(self, db: AsyncSession, table: str = "lessons") -> None:
        self._db = db
        # Validated as a plain identifier by Settings.
        self._table = table

    async def get_status(self, lesson_id: str) -> str | None:
        res = await self._db.execute(
            text(f"SELECT status FROM {self._table} WHERE CAST(id AS TEXT) = :id"),
            {"id": lesson_id},
        )
        row = res.first()
        if row is None:
            return None
        return str(row[0] or "").strip().lower()


class StaticLessonReader:
    """In-memory reader for tooling and tests: lesson id -> status."""

    def __init__(self, statuses: dict[str, str] | None = None) -> None:
        self.statuses = dict(statuses or {})

    async def get_status(self, lesson_id: str) -> str | None:
        return self.statuses.get(lesson_id)
