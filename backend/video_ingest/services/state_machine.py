"""
Lesson video lifecycle transitions.

`decide()` is pure: it takes a snapshot of the record and the facts of one
event and returns what should change. Persistence, provider calls and
progress fan-out live in `services.event_processor`.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any

from video_ingest.constants import EventKind, VideoStatus
from video_ingest.core.errors import ErrorKind


class Outcome(str, enum.Enum):
    APPLIED = "applied"
    NOOP = "noop"
    DROPPED = "dropped"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNMATCHED = "unmatched"
    TRANSIENT = "transient"


@dataclass(frozen=True)
class RecordState:
    status: VideoStatus
    provider: str | None = None
    upload_id: str | None = None
    asset_id: str | None = None
    playback_id: str | None = None
    processing_progress: int = 0
    error_kind: str | None = None
    version: int = 0

    @classmethod
    def from_record(cls, record: Any) -> "RecordState":
        return cls(
            status=VideoStatus(record.status),
            provider=record.provider,
            upload_id=record.upload_id,
            asset_id=record.asset_id,
            playback_id=record.playback_id,
            processing_progress=int(record.processing_progress or 0),
            error_kind=record.error_kind,
            version=int(record.version or 0),
        )


@dataclass(frozen=True)
class EventFacts:
    kind: EventKind
    upload_id: str | None = None
    asset_id: str | None = None
    progress: int | None = None
    error_kind: str | None = None
    error_message: str | None = None
    # Session bookkeeping for the event's upload id, resolved by the caller.
    upload_superseded: bool = False
    upload_session_active: bool = False
    # The event's asset is the replaced one parked on the record, not the live one.
    asset_superseded: bool = False


@dataclass(frozen=True)
class Decision:
    outcome: Outcome
    reason: str
    changes: dict[str, Any] = field(default_factory=dict)
    # asset.ready: playback id and duration must be resolved before writing.
    needs_playback: bool = False

    @property
    def applied(self) -> bool:
        return self.outcome is Outcome.APPLIED


def _apply(reason: str, **changes: Any) -> Decision:
    return Decision(Outcome.APPLIED, reason, changes)


def _noop(reason: str) -> Decision:
    return Decision(Outcome.NOOP, reason)


def _drop(reason: str) -> Decision:
    return Decision(Outcome.DROPPED, reason)


def _ready(state: RecordState, facts: EventFacts) -> Decision:
    return Decision(
        Outcome.APPLIED,
        "asset ready",
        {
            "status": VideoStatus.READY,
            "asset_id": facts.asset_id or state.asset_id,
            "processing_progress": 100,
            "error_kind": None,
            "error_message": None,
        },
        needs_playback=True,
    )


def _errored(facts: EventFacts) -> Decision:
    return _apply(
        "asset errored",
        status=VideoStatus.ERROR,
        playback_id=None,
        error_kind=facts.error_kind or ErrorKind.PERMANENT.value,
        error_message=facts.error_message,
    )


def _deleted(state: RecordState) -> Decision:
    if state.status is VideoStatus.NONE and state.asset_id is None:
        return _noop("already without asset")
    return _apply(
        "asset deleted",
        status=VideoStatus.NONE,
        upload_id=None,
        asset_id=None,
        playback_id=None,
        duration_seconds=None,
        processing_progress=0,
        error_kind=None,
        error_message=None,
    )


def decide(state: RecordState, facts: EventFacts) -> Decision:
    status = state.status
    kind = facts.kind

    if facts.upload_superseded:
        return _drop("upload belongs to a superseded session")
    if facts.asset_superseded:
        return _drop("event names the superseded asset")

    reset_from_error = (
        status is VideoStatus.ERROR
        and kind is EventKind.UPLOAD_CREATED
        and facts.upload_id is not None
        and facts.upload_id != state.upload_id
        and facts.upload_session_active
    )
    if reset_from_error:
        return _apply(
            "new upload after error",
            status=VideoStatus.UPLOADING,
            upload_id=facts.upload_id,
            asset_id=None,
            playback_id=None,
            duration_seconds=None,
            processing_progress=0,
            error_kind=None,
            error_message=None,
        )

    if facts.upload_id is not None and facts.upload_id != state.upload_id:
        return _drop("event names a different upload than the record")
    if state.asset_id is not None and facts.asset_id is not None and facts.asset_id != state.asset_id:
        return _drop("event names a different asset than the record")

    if kind is EventKind.ASSET_DELETED:
        return _deleted(state)

    if status in (VideoStatus.NONE, VideoStatus.AWAITING_UPLOAD):
        if kind is EventKind.UPLOAD_CREATED:
            return _apply("upload started", status=VideoStatus.UPLOADING)
        if kind is EventKind.PROGRESS:
            return _apply(
                "progress before upload acknowledged",
                status=VideoStatus.UPLOADING,
                processing_progress=facts.progress or 0,
            )
        if kind is EventKind.UPLOAD_ASSET_READY:
            return _apply("asset created", status=VideoStatus.PROCESSING, asset_id=facts.asset_id)
        if kind is EventKind.ASSET_READY:
            return _ready(state, facts)
        if kind is EventKind.ASSET_ERRORED:
            return _errored(facts)

    elif status is VideoStatus.UPLOADING:
        if kind is EventKind.UPLOAD_CREATED:
            return _noop("already uploading")
        if kind is EventKind.PROGRESS:
            progress = max(state.processing_progress, facts.progress or 0)
            return _apply("processing progress", status=VideoStatus.PROCESSING, processing_progress=progress)
        if kind is EventKind.UPLOAD_ASSET_READY:
            return _apply("asset created", status=VideoStatus.PROCESSING, asset_id=facts.asset_id)
        if kind is EventKind.ASSET_READY:
            return _ready(state, facts)
        if kind is EventKind.ASSET_ERRORED:
            return _errored(facts)

    elif status is VideoStatus.PROCESSING:
        if kind is EventKind.UPLOAD_CREATED:
            return _noop("already processing")
        if kind is EventKind.PROGRESS:
            value = facts.progress or 0
            if value < state.processing_progress:
                return _drop(f"out-of-order progress {value} < {state.processing_progress}")
            if value == state.processing_progress:
                return _noop("progress unchanged")
            return _apply("processing progress", processing_progress=value)
        if kind is EventKind.UPLOAD_ASSET_READY:
            if state.asset_id is None and facts.asset_id:
                return _apply("asset id learned", asset_id=facts.asset_id)
            return _noop("asset already known")
        if kind is EventKind.ASSET_READY:
            return _ready(state, facts)
        if kind is EventKind.ASSET_ERRORED:
            return _errored(facts)

    elif status is VideoStatus.READY:
        if kind is EventKind.ASSET_READY:
            return _noop("already ready")
        if kind is EventKind.ASSET_ERRORED:
            return _errored(facts)
        return _drop(f"{kind.value} after ready")

    elif status is VideoStatus.ERROR:
        if kind is EventKind.ASSET_READY:
            return _ready(state, facts)
        if kind is EventKind.ASSET_ERRORED:
            return _noop("already errored")
        return _drop(f"{kind.value} while errored")

    return _drop(f"no transition for {kind.value} from {status.value}")


def decide_session_issued(state: RecordState | None, *, upload_id: str, provider: str) -> Decision:
    """
    A fresh upload session resets the record to awaiting-upload for the new upload id.

    A ready asset is parked in `superseded_asset_id` and deleted once its
    replacement reaches ready.
    """
    changes: dict[str, Any] = {
        "status": VideoStatus.AWAITING_UPLOAD,
        "provider": provider,
        "upload_id": upload_id,
        "asset_id": None,
        "playback_id": None,
        "duration_seconds": None,
        "processing_progress": 0,
        "error_kind": None,
        "error_message": None,
    }
    if state is not None and state.status is VideoStatus.READY and state.asset_id:
        changes["superseded_asset_id"] = state.asset_id
        changes["superseded_provider"] = state.provider
    return Decision(Outcome.APPLIED, "upload session issued", changes)


def orphaned_asset(state: RecordState | None) -> str | None:
    """Asset a new session abandons without parking it (never reached ready)."""
    if state is None or state.asset_id is None or state.status is VideoStatus.READY:
        return None
    return state.asset_id
