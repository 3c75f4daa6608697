from __future__ import annotations

import pytest

from video_ingest.constants import EventKind, VideoStatus
from video_ingest.services.state_machine import (
    EventFacts,
    Outcome,
    RecordState,
    decide,
    decide_session_issued,
    orphaned_asset,
)

S = VideoStatus
K = EventKind


def _state(status: VideoStatus, **kw) -> RecordState:
    kw.setdefault("upload_id", "up-1")
    kw.setdefault("provider", "managed-stream")
    return RecordState(status=status, **kw)


def _facts(kind: EventKind, **kw) -> EventFacts:
    kw.setdefault("upload_id", "up-1")
    return EventFacts(kind=kind, **kw)


@pytest.mark.parametrize(
    "status,kind,expected_outcome,expected_status",
    [
        (S.AWAITING_UPLOAD, K.UPLOAD_CREATED, Outcome.APPLIED, S.UPLOADING),
        (S.NONE, K.UPLOAD_CREATED, Outcome.APPLIED, S.UPLOADING),
        (S.AWAITING_UPLOAD, K.ASSET_ERRORED, Outcome.APPLIED, S.ERROR),
        (S.UPLOADING, K.UPLOAD_CREATED, Outcome.NOOP, None),
        (S.UPLOADING, K.ASSET_ERRORED, Outcome.APPLIED, S.ERROR),
        (S.PROCESSING, K.UPLOAD_CREATED, Outcome.NOOP, None),
        (S.READY, K.UPLOAD_CREATED, Outcome.DROPPED, None),
        (S.READY, K.PROGRESS, Outcome.DROPPED, None),
        (S.READY, K.ASSET_ERRORED, Outcome.APPLIED, S.ERROR),
        (S.ERROR, K.ASSET_ERRORED, Outcome.NOOP, None),
        (S.ERROR, K.PROGRESS, Outcome.DROPPED, None),
    ],
)
def test_transition_table(status, kind, expected_outcome, expected_status) -> None:
    asset = "A" if status in (S.READY, S.ERROR) else None
    decision = decide(_state(status, asset_id=asset), _facts(kind, progress=10, asset_id=asset))
    assert decision.outcome is expected_outcome
    if expected_status is not None:
        assert decision.changes["status"] is expected_status


@pytest.mark.parametrize("status", [S.AWAITING_UPLOAD, S.UPLOADING, S.PROCESSING, S.ERROR])
def test_asset_ready_needs_playback_resolution(status) -> None:
    decision = decide(_state(status, asset_id=None), _facts(K.ASSET_READY, asset_id="A"))
    assert decision.outcome is Outcome.APPLIED
    assert decision.needs_playback is True
    assert decision.changes["status"] is S.READY
    assert decision.changes["asset_id"] == "A"


def test_ready_is_idempotent() -> None:
    decision = decide(_state(S.READY, asset_id="A", playback_id="P"), _facts(K.ASSET_READY, asset_id="A"))
    assert decision.outcome is Outcome.NOOP
    assert decision.needs_playback is False


def test_progress_moves_uploading_to_processing() -> None:
    decision = decide(_state(S.UPLOADING), _facts(K.PROGRESS, progress=25))
    assert decision.changes == {"status": S.PROCESSING, "processing_progress": 25}


def test_progress_is_monotonic_while_processing() -> None:
    state = _state(S.PROCESSING, processing_progress=90)
    assert decide(state, _facts(K.PROGRESS, progress=25)).outcome is Outcome.DROPPED
    assert decide(state, _facts(K.PROGRESS, progress=90)).outcome is Outcome.NOOP
    assert decide(state, _facts(K.PROGRESS, progress=95)).changes == {"processing_progress": 95}


def test_out_of_order_progress_scenario() -> None:
    # progress 90, progress 25, asset.ready -> recorded 90, 90, ready
    state = _state(S.UPLOADING)
    first = decide(state, _facts(K.PROGRESS, progress=90))
    assert first.applied and first.changes["processing_progress"] == 90

    state = _state(S.PROCESSING, processing_progress=90)
    assert decide(state, _facts(K.PROGRESS, progress=25)).outcome is Outcome.DROPPED

    last = decide(state, _facts(K.ASSET_READY, asset_id="A"))
    assert last.changes["status"] is S.READY


def test_upload_asset_ready_records_the_asset() -> None:
    decision = decide(_state(S.UPLOADING), _facts(K.UPLOAD_ASSET_READY, asset_id="A"))
    assert decision.changes == {"status": S.PROCESSING, "asset_id": "A"}

    known = decide(_state(S.PROCESSING, asset_id="A"), _facts(K.UPLOAD_ASSET_READY, asset_id="A"))
    assert known.outcome is Outcome.NOOP


def test_events_for_another_upload_or_asset_are_dropped() -> None:
    assert decide(_state(S.UPLOADING), _facts(K.PROGRESS, upload_id="up-old", progress=5)).outcome is Outcome.DROPPED
    other_asset = decide(_state(S.PROCESSING, asset_id="A"), _facts(K.ASSET_READY, upload_id=None, asset_id="B"))
    assert other_asset.outcome is Outcome.DROPPED


def test_superseded_upload_is_dropped_before_anything_else() -> None:
    decision = decide(_state(S.AWAITING_UPLOAD), _facts(K.ASSET_READY, asset_id="A", upload_superseded=True))
    assert decision.outcome is Outcome.DROPPED


@pytest.mark.parametrize("kind", [K.ASSET_ERRORED, K.ASSET_DELETED, K.ASSET_READY, K.PROGRESS])
def test_events_for_the_replaced_asset_leave_the_new_upload_alone(kind) -> None:
    # After a new session the record has no asset yet; the old asset is only parked.
    state = _state(S.AWAITING_UPLOAD, upload_id="up-2")
    decision = decide(state, _facts(kind, upload_id=None, asset_id="A-old", progress=50, asset_superseded=True))
    assert decision.outcome is Outcome.DROPPED
    assert decision.changes == {}


def test_error_resets_on_newer_active_upload() -> None:
    state = _state(S.ERROR, asset_id="A", error_kind="source-invalid")
    decision = decide(state, _facts(K.UPLOAD_CREATED, upload_id="up-2", upload_session_active=True))
    assert decision.outcome is Outcome.APPLIED
    assert decision.changes["status"] is S.UPLOADING
    assert decision.changes["upload_id"] == "up-2"
    assert decision.changes["error_kind"] is None

    # Same upload id (or no live session) does not reset.
    assert decide(state, _facts(K.UPLOAD_CREATED)).outcome is Outcome.DROPPED
    stale = decide(state, _facts(K.UPLOAD_CREATED, upload_id="up-2", upload_session_active=False))
    assert stale.outcome is Outcome.DROPPED


def test_errored_event_carries_kind_and_clears_playback() -> None:
    decision = decide(
        _state(S.UPLOADING),
        _facts(K.ASSET_ERRORED, error_kind="source-invalid", error_message="bad codec"),
    )
    assert decision.changes["status"] is S.ERROR
    assert decision.changes["error_kind"] == "source-invalid"
    assert decision.changes["error_message"] == "bad codec"
    assert decision.changes["playback_id"] is None


def test_errored_without_kind_defaults_to_permanent() -> None:
    decision = decide(_state(S.PROCESSING), _facts(K.ASSET_ERRORED))
    assert decision.changes["error_kind"] == "permanent"


@pytest.mark.parametrize("status", [S.AWAITING_UPLOAD, S.UPLOADING, S.PROCESSING, S.READY, S.ERROR])
def test_asset_deleted_returns_to_none(status) -> None:
    decision = decide(_state(status, asset_id="A"), _facts(K.ASSET_DELETED, upload_id=None, asset_id="A"))
    assert decision.outcome is Outcome.APPLIED
    assert decision.changes["status"] is S.NONE
    assert decision.changes["asset_id"] is None
    assert decision.changes["playback_id"] is None
    assert decision.changes["upload_id"] is None


def test_asset_deleted_on_empty_record_is_noop() -> None:
    decision = decide(_state(S.NONE, upload_id=None), _facts(K.ASSET_DELETED, upload_id=None, asset_id="A"))
    assert decision.outcome is Outcome.NOOP


def test_session_issued_parks_ready_asset() -> None:
    state = _state(S.READY, asset_id="A", playback_id="P")
    decision = decide_session_issued(state, upload_id="up-2", provider="managed-stream")
    assert decision.changes["status"] is S.AWAITING_UPLOAD
    assert decision.changes["upload_id"] == "up-2"
    assert decision.changes["playback_id"] is None
    assert decision.changes["superseded_asset_id"] == "A"
    assert decision.changes["superseded_provider"] == "managed-stream"


def test_session_issued_for_new_lesson_and_orphans() -> None:
    decision = decide_session_issued(None, upload_id="up-1", provider="object-store")
    assert decision.changes["status"] is S.AWAITING_UPLOAD
    assert "superseded_asset_id" not in decision.changes

    assert orphaned_asset(None) is None
    assert orphaned_asset(_state(S.READY, asset_id="A")) is None
    assert orphaned_asset(_state(S.PROCESSING, asset_id="A")) == "A"
    assert orphaned_asset(_state(S.ERROR, asset_id="B")) == "B"
