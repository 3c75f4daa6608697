from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import StreamingResponse
from sqlalchemy import select

from video_ingest.api.deps import get_hub, get_subject_id, subject_from_token, token_from_request
from video_ingest.core.settings import Settings, get_settings
from video_ingest.db.models.lesson_video_record import LessonVideoRecord
from video_ingest.db.session import get_session_maker
from video_ingest.progress.events import StateChanged
from video_ingest.progress.hub import ProgressHub, Subscription

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/progress", tags=["progress"])

# WebSocket close codes for auth failures (private-use range).
WS_UNAUTHENTICATED = 4401
WS_FORBIDDEN = 4403


def _snapshot_loader(lesson_id: str):
    async def load() -> StateChanged:
        SessionLocal = get_session_maker()
        async with SessionLocal() as db:
            res = await db.execute(select(LessonVideoRecord).where(LessonVideoRecord.lesson_id == lesson_id))
            record = res.scalar_one_or_none()
        if record is None:
            return StateChanged.empty(lesson_id)
        return StateChanged.from_record(record)

    return load


async def _open(hub: ProgressHub, lesson_id: str, since_version: int | None) -> Subscription:
    return await hub.subscribe(lesson_id, since_version=since_version, load_snapshot=_snapshot_loader(lesson_id))


@router.websocket("")
async def progress_socket(
    websocket: WebSocket,
    lesson_id: str = Query(..., alias="lessonId", min_length=1, max_length=64),
    since_version: int | None = Query(default=None, alias="sinceVersion", ge=0),
) -> None:
    settings = get_settings()
    hub: ProgressHub = websocket.app.state.hub

    subject = subject_from_token(token_from_request(websocket, settings), settings)
    if subject is None:
        await websocket.close(code=WS_UNAUTHENTICATED)
        return
    if not await hub.can_observe(subject, lesson_id):
        await websocket.close(code=WS_FORBIDDEN)
        return

    await websocket.accept()
    sub = await _open(hub, lesson_id, since_version)

    async def watch_disconnect() -> None:
        # Clients never send anything meaningful; a receive only returns on close.
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            await sub.close()

    watcher = asyncio.create_task(watch_disconnect())
    heartbeat = float(settings.progress_heartbeat_seconds)
    try:
        while not sub.closed:
            change = await sub.get(timeout=heartbeat)
            if change is None:
                if sub.closed:
                    break
                await websocket.send_json({"type": "heartbeat"})
                continue
            await websocket.send_json(change.to_frame())
    except (WebSocketDisconnect, RuntimeError):
        # RuntimeError: send after the peer went away.
        pass
    finally:
        watcher.cancel()
        await sub.close()
        logger.debug("Progress socket for lesson %s closed", lesson_id)


async def _sse_frames(request: Request, sub: Subscription, heartbeat: float) -> AsyncIterator[str]:
    try:
        while not sub.closed:
            change = await sub.get(timeout=heartbeat)
            if await request.is_disconnected():
                break
            if change is None:
                yield ": keepalive\n\n"
                continue
            frame = change.to_frame()
            yield f"id: {change.version}\nevent: {frame['type']}\ndata: {json.dumps(frame)}\n\n"
    finally:
        await sub.close()


@router.get("/stream")
async def progress_stream(
    request: Request,
    lesson_id: str = Query(..., alias="lessonId", min_length=1, max_length=64),
    since_version: int | None = Query(default=None, alias="sinceVersion", ge=0),
    hub: ProgressHub = Depends(get_hub),
    settings: Settings = Depends(get_settings),
    subject_id: str = Depends(get_subject_id),
) -> StreamingResponse:
    """Server-sent events transport for the same frames the WebSocket emits."""
    if not await hub.can_observe(subject_id, lesson_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to observe this lesson")

    # EventSource reconnects send the last seen id back.
    last_event_id = (request.headers.get("last-event-id") or "").strip()
    if since_version is None and last_event_id.isdigit():
        since_version = int(last_event_id)

    sub = await _open(hub, lesson_id, since_version)
    return StreamingResponse(
        _sse_frames(request, sub, float(settings.progress_heartbeat_seconds)),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
