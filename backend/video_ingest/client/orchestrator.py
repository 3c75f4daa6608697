"""
Python authoring client for the lesson video pipeline.

Flow per upload:
- Request a direct-upload session (a 409 hands back the live session, which is reused)
- Subscribe to lesson progress (SSE, falling back to status polling)
- PUT the bytes; retry the same URL until it expires, then supersede the session
- Send the advisory finished signal
- Wait for a terminal frame for our upload id

The PUT status alone never completes an upload; only `complete`/`failed` frames do.
"""
from __future__ import annotations

import asyncio
import enum
import json
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx

from video_ingest.core.errors import ClientInvalidError, ErrorKind

logger = logging.getLogger(__name__)

DEFAULT_MIN_BYTES = 1024
DEFAULT_MAX_BYTES = 5 * 1024 * 1024 * 1024
_CHUNK_SIZE = 1024 * 1024


class UploadStage(str, enum.Enum):
    PREPARING = "preparing"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class UploadFailed(Exception):
    """An upload that did not reach `ready`; `kind` is the pipeline error kind."""

    def __init__(self, kind: str, message: str, *, upload_id: str | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.upload_id = upload_id

    @property
    def quota_exceeded(self) -> bool:
        return self.kind == ErrorKind.QUOTA_EXCEEDED.value


@dataclass(frozen=True)
class UploadSessionInfo:
    session_id: str
    lesson_id: str
    upload_id: str
    upload_url: str
    expires_at: datetime

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "UploadSessionInfo":
        return cls(
            session_id=str(payload["sessionId"]),
            lesson_id=str(payload["lessonId"]),
            upload_id=str(payload["uploadId"]),
            upload_url=str(payload["uploadUrl"]),
            expires_at=_parse_datetime(payload["expiresAt"]),
        )


@dataclass(frozen=True)
class UploadResult:
    lesson_id: str
    upload_id: str
    version: int
    playback_id: str | None = None


def _parse_datetime(value: str) -> datetime:
    dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _error_kind_from_response(res: httpx.Response) -> str:
    if res.status_code == 429:
        return ErrorKind.QUOTA_EXCEEDED.value
    if res.status_code in (408, 503) or res.status_code >= 500:
        try:
            detail = res.json().get("detail")
        except ValueError:
            detail = None
        if isinstance(detail, dict) and detail.get("errorKind"):
            return str(detail["errorKind"])
        return ErrorKind.TRANSIENT.value
    return ErrorKind.PERMANENT.value


def _is_retryable_status(status_code: int) -> bool:
    return status_code in (408, 429) or status_code >= 500


def check_payload_size(size: int, *, min_bytes: int = DEFAULT_MIN_BYTES, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
    if size <= 0:
        raise ClientInvalidError("video is empty")
    if size < min_bytes:
        raise ClientInvalidError(f"video is too small ({size} bytes); the recording likely failed")
    if size > max_bytes:
        raise ClientInvalidError(f"video is too large ({size} bytes, max {max_bytes})")


def _frame_from_status(payload: dict[str, Any]) -> dict[str, Any]:
    status = payload.get("status")
    frame_type = {"ready": "complete", "error": "failed"}.get(status, "progress")
    return {
        "type": frame_type,
        "lessonId": payload.get("lessonId"),
        "version": int(payload.get("version") or 0),
        "status": status,
        "progress": payload.get("progress") or 0,
        "uploadId": payload.get("uploadId"),
        "playbackId": payload.get("playbackId"),
        "errorKind": payload.get("errorKind"),
        "errorMessage": payload.get("errorMessage"),
    }


class _ProgressWatcher:
    """
    Follows one lesson's frames into a queue.

    Uses the SSE stream while it is reachable; otherwise polls the status
    endpoint once per interval and retries the stream on the next turn.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        lesson_id: str,
        *,
        poll_interval_seconds: float,
        sleep: Callable[[float], Any],
    ) -> None:
        self._client = client
        self._lesson_id = lesson_id
        self._poll_interval = float(poll_interval_seconds)
        self._sleep = sleep
        self.frames: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self.last_version = -1
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    def _emit(self, frame: dict[str, Any]) -> None:
        version = int(frame.get("version") or 0)
        if version <= self.last_version:
            return
        self.last_version = version
        self.frames.put_nowait(frame)

    async def _run(self) -> None:
        while True:
            try:
                await self._stream()
            except httpx.HTTPError as e:
                logger.info("Progress stream for lesson %s unavailable (%s); polling status", self._lesson_id, e)
            await self._poll()
            await self._sleep(self._poll_interval)

    async def _stream(self) -> None:
        params: dict[str, Any] = {"lessonId": self._lesson_id}
        if self.last_version >= 0:
            params["sinceVersion"] = self.last_version
        timeout = httpx.Timeout(10.0, read=None)
        async with self._client.stream("GET", "/api/v1/progress/stream", params=params, timeout=timeout) as res:
            if res.status_code != 200:
                raise httpx.HTTPStatusError(
                    f"progress stream returned {res.status_code}", request=res.request, response=res
                )
            async for frame in _iter_sse(res.aiter_lines()):
                self._emit(frame)

    async def _poll(self) -> None:
        try:
            res = await self._client.get(f"/api/v1/videos/{self._lesson_id}/status")
        except httpx.HTTPError as e:
            logger.info("Status poll for lesson %s failed: %s", self._lesson_id, e)
            return
        if res.status_code == 200:
            self._emit(_frame_from_status(res.json()))


async def _iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[dict[str, Any]]:
    data: list[str] = []
    async for line in lines:
        if not line:
            if data:
                try:
                    yield json.loads("\n".join(data))
                except json.JSONDecodeError:
                    logger.warning("Skipping unparseable progress frame")
                data = []
            continue
        if line.startswith(":"):
            continue
        field_name, _, value = line.partition(":")
        if field_name == "data":
            data.append(value[1:] if value.startswith(" ") else value)


class UploadOrchestrator:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        min_bytes: int = DEFAULT_MIN_BYTES,
        max_bytes: int = DEFAULT_MAX_BYTES,
        content_type: str = "video/mp4",
        put_retry_delay_seconds: float = 2.0,
        max_session_renewals: int = 2,
        poll_interval_seconds: float = 5.0,
        completion_timeout_seconds: float = 6 * 3600,
        on_stage: Callable[[str, UploadStage], None] | None = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        """
        `client` must carry the API base URL and credentials (cookie or bearer).
        The PUT to the provider goes through the same client with absolute URLs.
        """
        self._client = client
        self._min_bytes = int(min_bytes)
        self._max_bytes = int(max_bytes)
        self._content_type = content_type
        self._retry_delay = float(put_retry_delay_seconds)
        self._max_renewals = int(max_session_renewals)
        self._poll_interval = float(poll_interval_seconds)
        self._completion_timeout = float(completion_timeout_seconds)
        self._on_stage = on_stage
        self._sleep = sleep
        self._clock = clock

    def _stage(self, lesson_id: str, stage: UploadStage, callback=None) -> None:
        logger.debug("Lesson %s: %s", lesson_id, stage.value)
        for cb in (self._on_stage, callback):
            if cb is not None:
                cb(lesson_id, stage)

    async def upload(
        self,
        lesson_id: str,
        source: bytes | Path,
        *,
        metadata: dict[str, Any] | None = None,
        content_type: str | None = None,
        on_stage: Callable[[str, UploadStage], None] | None = None,
    ) -> UploadResult:
        size = len(source) if isinstance(source, (bytes, bytearray)) else Path(source).stat().st_size
        check_payload_size(size, min_bytes=self._min_bytes, max_bytes=self._max_bytes)

        self._stage(lesson_id, UploadStage.PREPARING, on_stage)
        session = await self.request_session(lesson_id, metadata=metadata)

        watcher = _ProgressWatcher(
            self._client, lesson_id, poll_interval_seconds=self._poll_interval, sleep=self._sleep
        )
        watcher.start()
        try:
            self._stage(lesson_id, UploadStage.UPLOADING, on_stage)
            session = await self._put_with_renewal(session, source, size, content_type or self._content_type, metadata)
            self._stage(lesson_id, UploadStage.PROCESSING, on_stage)
            await self._signal_finished(session)
            result = await self._await_terminal(watcher, session)
        except UploadFailed:
            self._stage(lesson_id, UploadStage.FAILED, on_stage)
            raise
        finally:
            await watcher.stop()

        self._stage(lesson_id, UploadStage.COMPLETED, on_stage)
        return result

    async def request_session(
        self,
        lesson_id: str,
        *,
        metadata: dict[str, Any] | None = None,
        override: bool = False,
    ) -> UploadSessionInfo:
        body: dict[str, Any] = {"lessonId": lesson_id, "override": override}
        if metadata:
            body["metadata"] = metadata
        try:
            res = await self._client.post("/api/v1/videos/mux/upload-url", json=body)
        except httpx.HTTPError as e:
            raise UploadFailed(ErrorKind.TRANSIENT.value, f"session request failed: {e}") from e

        if res.status_code == 409:
            detail = res.json().get("detail")
            if isinstance(detail, dict) and isinstance(detail.get("session"), dict):
                existing = UploadSessionInfo.from_payload(detail["session"])
                if existing.expires_at > self._clock():
                    logger.info("Reusing live upload session %s for lesson %s", existing.session_id, lesson_id)
                    return existing
                return await self.request_session(lesson_id, metadata=metadata, override=True)
            raise UploadFailed(ErrorKind.PERMANENT.value, f"lesson {lesson_id} is closed for uploads")
        if res.status_code != 200:
            raise UploadFailed(_error_kind_from_response(res), f"session request returned HTTP {res.status_code}")
        return UploadSessionInfo.from_payload(res.json())

    async def _body(self, source: bytes | Path) -> AsyncIterator[bytes]:
        if isinstance(source, (bytes, bytearray)):
            for start in range(0, len(source), _CHUNK_SIZE):
                yield bytes(source[start : start + _CHUNK_SIZE])
            return
        fh = await asyncio.to_thread(open, source, "rb")
        try:
            while True:
                chunk = await asyncio.to_thread(fh.read, _CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        finally:
            await asyncio.to_thread(fh.close)

    async def _put_once(self, session: UploadSessionInfo, source: bytes | Path, size: int, content_type: str) -> int | None:
        """PUT status code, or None on a transport error."""
        headers = {"Content-Type": content_type, "Content-Length": str(size)}
        try:
            res = await self._client.put(
                session.upload_url,
                content=self._body(source),
                headers=headers,
                timeout=httpx.Timeout(30.0, read=None, write=None),
            )
        except httpx.TransportError as e:
            logger.warning("PUT for upload %s failed: %s", session.upload_id, e)
            return None
        return res.status_code

    async def _put_with_renewal(
        self,
        session: UploadSessionInfo,
        source: bytes | Path,
        size: int,
        content_type: str,
        metadata: dict[str, Any] | None,
    ) -> UploadSessionInfo:
        renewals = 0
        attempt = 0
        while True:
            attempt += 1
            status_code = await self._put_once(session, source, size, content_type)
            if status_code is not None and 200 <= status_code < 300:
                return session
            if status_code is not None and not _is_retryable_status(status_code):
                raise UploadFailed(
                    ErrorKind.PERMANENT.value,
                    f"upload rejected with HTTP {status_code}",
                    upload_id=session.upload_id,
                )

            delay = min(self._retry_delay * (2 ** (attempt - 1)), 60.0)
            if self._clock().timestamp() + delay < session.expires_at.timestamp():
                await self._sleep(delay)
                continue

            # The URL lapses before the next try: a fresh session supersedes this one.
            if renewals >= self._max_renewals:
                raise UploadFailed(
                    ErrorKind.TRANSIENT.value,
                    "upload kept failing across session renewals",
                    upload_id=session.upload_id,
                )
            renewals += 1
            attempt = 0
            logger.info("Upload URL for %s expired; requesting a new session", session.upload_id)
            session = await self.request_session(session.lesson_id, metadata=metadata, override=True)

    async def _signal_finished(self, session: UploadSessionInfo) -> None:
        # Advisory only; the provider webhook is authoritative.
        try:
            res = await self._client.post(f"/api/v1/videos/sessions/{session.session_id}/finished")
        except httpx.HTTPError as e:
            logger.info("Finished signal for session %s not delivered: %s", session.session_id, e)
            return
        if res.status_code >= 400:
            logger.info("Finished signal for session %s returned HTTP %s", session.session_id, res.status_code)

    async def _await_terminal(self, watcher: _ProgressWatcher, session: UploadSessionInfo) -> UploadResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._completion_timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise UploadFailed(
                    ErrorKind.TRANSIENT.value,
                    "timed out waiting for processing to finish",
                    upload_id=session.upload_id,
                )
            try:
                frame = await asyncio.wait_for(watcher.frames.get(), timeout=remaining)
            except asyncio.TimeoutError:
                continue

            if frame.get("uploadId") != session.upload_id:
                continue
            if frame.get("type") == "complete":
                return UploadResult(
                    lesson_id=session.lesson_id,
                    upload_id=session.upload_id,
                    version=int(frame.get("version") or 0),
                    playback_id=frame.get("playbackId"),
                )
            if frame.get("type") == "failed":
                raise UploadFailed(
                    str(frame.get("errorKind") or ErrorKind.PERMANENT.value),
                    str(frame.get("errorMessage") or "processing failed"),
                    upload_id=session.upload_id,
                )
