from __future__ import annotations

import asyncio
from pathlib import Path
from uuid import uuid4

import httpx
import pytest
from alembic import command
from alembic.config import Config
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from fakes import FakeProvider, event_body, signed
from video_ingest.api.deps import get_lesson_reader
from video_ingest.core.errors import ErrorKind, ProviderError
from video_ingest.core.security import create_access_token
from video_ingest.core.settings import get_settings
from video_ingest.lessons import StaticLessonReader
from video_ingest.main import create_app
from video_ingest.providers.base import UploadLookup


async def _can_connect(database_url: str) -> bool:
    engine = create_async_engine(database_url, pool_pre_ping=True)
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
    finally:
        await engine.dispose()


def _run_migrations_sync() -> None:
    backend_root = Path(__file__).resolve().parents[1]
    cfg = Config(str(backend_root / "alembic.ini"))
    cfg.set_main_option("script_location", str(backend_root / "alembic"))
    command.upgrade(cfg, "head")


class Harness:
    def __init__(self, client: httpx.AsyncClient, provider: FakeProvider, lessons: StaticLessonReader, token: str, app=None):
        self.client = client
        self.app = app
        self.provider = provider
        self.lessons = lessons
        self.auth = {"Authorization": f"Bearer {token}"}

    async def request_session(self, lesson_id: str, *, override: bool = False) -> httpx.Response:
        return await self.client.post(
            "/api/v1/videos/mux/upload-url",
            json={"lessonId": lesson_id, "override": override},
            headers=self.auth,
        )

    async def deliver(self, event_type: str, *, event_id: str | None = None, **data) -> httpx.Response:
        body = event_body(event_type, event_id=event_id, **data)
        return await self.client.post("/api/webhooks/provider", content=body, headers=signed(self.provider, body))

    async def status(self, lesson_id: str) -> dict:
        r = await self.client.get(f"/api/v1/videos/{lesson_id}/status", headers=self.auth)
        assert r.status_code == 200
        return r.json()


async def _harness(monkeypatch, *lesson_ids: str, closed: tuple[str, ...] = ()):
    monkeypatch.setenv("PROVIDER_WEBHOOK_SECRET", "whsec_test")
    monkeypatch.setenv("RECONCILE_IN_PROCESS", "false")
    get_settings.cache_clear()
    settings = get_settings()

    if not await _can_connect(settings.database_url):
        pytest.skip("Database not reachable. Start Postgres and ensure DATABASE_URL is correct.")

    await asyncio.to_thread(_run_migrations_sync)

    app = create_app()
    provider = FakeProvider(settings)
    app.state.registry.register(provider)
    lessons = StaticLessonReader({lid: "draft" for lid in lesson_ids})
    lessons.statuses.update({lid: "finalized" for lid in closed})
    app.dependency_overrides[get_lesson_reader] = lambda: lessons

    token = create_access_token(subject="author-1", ttl_seconds=600, secret=settings.jwt_secret)
    client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")
    return Harness(client, provider, lessons, token, app)


def _lesson() -> str:
    return f"lesson-{uuid4().hex[:12]}"


@pytest.mark.asyncio
async def test_happy_path_reaches_ready_with_increasing_versions(monkeypatch) -> None:
    lesson = _lesson()
    h = await _harness(monkeypatch, lesson)
    async with h.client:
        r = await h.request_session(lesson)
        assert r.status_code == 200
        session = r.json()
        upload_id = session["uploadId"]
        assert session["lessonId"] == lesson
        assert session["uploadUrl"].endswith(upload_id)

        s0 = await h.status(lesson)
        assert s0["status"] == "awaiting-upload"

        assert (await h.deliver("upload.created", upload_id=upload_id)).status_code == 204
        s1 = await h.status(lesson)
        assert s1["status"] == "uploading"

        assert (await h.deliver("progress", upload_id=upload_id, asset_id="A1", progress=40)).status_code == 204
        s2 = await h.status(lesson)
        assert (s2["status"], s2["progress"]) == ("processing", 40)

        h.provider.make_ready("A1", playback_id="pb-A1", duration=61.0)
        assert (await h.deliver("asset.ready", upload_id=upload_id, asset_id="A1")).status_code == 204
        s3 = await h.status(lesson)
        assert s3["status"] == "ready"
        assert s3["playbackId"] == "pb-A1"
        assert s3["durationSeconds"] == 61.0
        assert s0["version"] < s1["version"] < s2["version"] < s3["version"]

        playback = await h.client.get(f"/api/v1/videos/{lesson}/playback", headers=h.auth)
        assert playback.status_code == 200
        assert playback.json()["streamUrl"] == "https://stream.test/pb-A1.m3u8"


@pytest.mark.asyncio
async def test_duplicate_delivery_changes_nothing(monkeypatch) -> None:
    lesson = _lesson()
    h = await _harness(monkeypatch, lesson)
    async with h.client:
        upload_id = (await h.request_session(lesson)).json()["uploadId"]
        h.provider.make_ready("A1")

        assert (await h.deliver("asset.ready", event_id="evt-dup-" + lesson, upload_id=upload_id, asset_id="A1")).status_code == 204
        first = await h.status(lesson)
        describe_calls = h.provider.describe_calls

        assert (await h.deliver("asset.ready", event_id="evt-dup-" + lesson, upload_id=upload_id, asset_id="A1")).status_code == 204
        assert await h.status(lesson) == first
        assert h.provider.describe_calls == describe_calls

        events = await h.client.get(f"/api/v1/videos/{lesson}/events", headers=h.auth)
        assert events.status_code == 200
        assert [e["eventId"] for e in events.json()["items"]] == ["evt-dup-" + lesson]


@pytest.mark.asyncio
async def test_out_of_order_progress_is_monotonic(monkeypatch) -> None:
    lesson = _lesson()
    h = await _harness(monkeypatch, lesson)
    async with h.client:
        upload_id = (await h.request_session(lesson)).json()["uploadId"]
        await h.deliver("upload.created", upload_id=upload_id)

        await h.deliver("progress", upload_id=upload_id, progress=90)
        assert (await h.status(lesson))["progress"] == 90
        await h.deliver("progress", upload_id=upload_id, progress=25)
        assert (await h.status(lesson))["progress"] == 90

        h.provider.make_ready("A1")
        await h.deliver("asset.ready", upload_id=upload_id, asset_id="A1")
        assert (await h.status(lesson))["status"] == "ready"


@pytest.mark.asyncio
async def test_rejected_webhooks(monkeypatch) -> None:
    lesson = _lesson()
    h = await _harness(monkeypatch, lesson)
    async with h.client:
        body = event_body("progress", upload_id="up-x", progress=1)

        r = await h.client.post("/api/webhooks/provider", content=body, headers=signed(h.provider, body, secret="wrong"))
        assert r.status_code == 400
        assert r.json()["detail"] == "auth-failed"

        r = await h.client.post("/api/webhooks/provider", content=body)
        assert r.status_code == 400

        stale = signed(h.provider, body, timestamp=1_000_000)
        r = await h.client.post("/api/webhooks/provider", content=body, headers=stale)
        assert r.status_code == 503

        r = await h.client.post("/api/webhooks/provider/youtube", content=body, headers=signed(h.provider, body))
        assert r.status_code == 404

        # Events for unknown uploads are accepted and recorded as unmatched.
        r = await h.client.post("/api/webhooks/provider", content=body, headers=signed(h.provider, body))
        assert r.status_code == 204


@pytest.mark.asyncio
async def test_transient_describe_failure_asks_for_redelivery(monkeypatch) -> None:
    lesson = _lesson()
    h = await _harness(monkeypatch, lesson)
    async with h.client:
        upload_id = (await h.request_session(lesson)).json()["uploadId"]
        await h.deliver("upload.created", upload_id=upload_id)
        before = await h.status(lesson)

        h.provider.describe_errors["A1"] = ProviderError(ErrorKind.TRANSIENT, "provider 503")
        event_id = f"evt-ready-{lesson}"
        r = await h.deliver("asset.ready", event_id=event_id, upload_id=upload_id, asset_id="A1")
        assert r.status_code == 503
        held = await h.status(lesson)
        assert before["status"] == "uploading"
        assert held["status"] == "processing"
        assert held["version"] > before["version"]
        assert held.get("playbackId") is None

        # The redelivery of the same event is not treated as a duplicate.
        del h.provider.describe_errors["A1"]
        h.provider.make_ready("A1")
        r = await h.deliver("asset.ready", event_id=event_id, upload_id=upload_id, asset_id="A1")
        assert r.status_code == 204
        assert (await h.status(lesson))["status"] == "ready"


@pytest.mark.asyncio
async def test_permanent_describe_failure_is_an_error(monkeypatch) -> None:
    lesson = _lesson()
    h = await _harness(monkeypatch, lesson)
    async with h.client:
        upload_id = (await h.request_session(lesson)).json()["uploadId"]
        await h.deliver("asset.ready", upload_id=upload_id, asset_id="A-missing")
        s = await h.status(lesson)
        assert s["status"] == "error"
        assert s["errorKind"] == "permanent-describe-failure"


@pytest.mark.asyncio
async def test_live_session_conflict_and_override(monkeypatch) -> None:
    lesson = _lesson()
    h = await _harness(monkeypatch, lesson)
    async with h.client:
        first = (await h.request_session(lesson)).json()

        again = await h.request_session(lesson)
        assert again.status_code == 409
        assert again.json()["detail"]["session"]["uploadId"] == first["uploadId"]

        replaced = await h.request_session(lesson, override=True)
        assert replaced.status_code == 200
        second = replaced.json()
        assert second["uploadId"] != first["uploadId"]

        # Late events for the superseded upload are dropped.
        h.provider.make_ready("A-old")
        assert (await h.deliver("asset.ready", upload_id=first["uploadId"], asset_id="A-old")).status_code == 204
        s = await h.status(lesson)
        assert s["status"] == "awaiting-upload"
        assert s["uploadId"] == second["uploadId"]


@pytest.mark.asyncio
async def test_replacing_a_ready_video_deletes_the_old_asset_once_new_is_ready(monkeypatch) -> None:
    lesson = _lesson()
    h = await _harness(monkeypatch, lesson)
    async with h.client:
        first = (await h.request_session(lesson)).json()["uploadId"]
        h.provider.make_ready("A1", playback_id="pb-1")
        await h.deliver("asset.ready", upload_id=first, asset_id="A1")
        assert (await h.status(lesson))["status"] == "ready"

        r = await h.request_session(lesson)
        assert r.status_code == 200
        second = r.json()["uploadId"]
        assert (await h.status(lesson))["status"] == "awaiting-upload"
        assert h.provider.deleted == []

        h.provider.make_ready("A2", playback_id="pb-2")
        await h.deliver("asset.ready", upload_id=second, asset_id="A2")
        s = await h.status(lesson)
        assert (s["status"], s["playbackId"]) == ("ready", "pb-2")
        assert h.provider.deleted == ["A1"]


@pytest.mark.asyncio
async def test_error_then_new_upload_recovers(monkeypatch) -> None:
    lesson = _lesson()
    h = await _harness(monkeypatch, lesson)
    async with h.client:
        first = (await h.request_session(lesson)).json()["uploadId"]
        await h.deliver("asset.errored", upload_id=first, asset_id="A1", error_kind="source-invalid", error_message="bad")
        s = await h.status(lesson)
        assert (s["status"], s["errorKind"]) == ("error", "source-invalid")

        second = (await h.request_session(lesson)).json()["uploadId"]
        await h.deliver("upload.created", upload_id=second)
        s = await h.status(lesson)
        assert s["status"] == "uploading"
        assert s["errorKind"] is None


@pytest.mark.asyncio
async def test_client_finished_hint_moves_to_uploading(monkeypatch) -> None:
    lesson = _lesson()
    h = await _harness(monkeypatch, lesson)
    async with h.client:
        session = (await h.request_session(lesson)).json()
        r = await h.client.post(f"/api/v1/videos/sessions/{session['sessionId']}/finished", headers=h.auth)
        assert r.status_code == 202
        assert r.json() == {"accepted": True, "applied": True}
        assert (await h.status(lesson))["status"] == "uploading"

        # The provider's own first event is still accepted.
        assert (await h.deliver("upload.created", upload_id=session["uploadId"])).status_code == 204

        missing = await h.client.post(f"/api/v1/videos/sessions/{uuid4()}/finished", headers=h.auth)
        assert missing.status_code == 404


@pytest.mark.asyncio
async def test_session_requests_are_validated(monkeypatch) -> None:
    lesson = _lesson()
    closed = _lesson()
    h = await _harness(monkeypatch, lesson, closed=(closed,))
    async with h.client:
        assert (await h.request_session(_lesson())).status_code == 404
        assert (await h.request_session(closed)).status_code == 409

        r = await h.client.post("/api/v1/videos/mux/upload-url", json={"lessonId": lesson, "override": False})
        assert r.status_code == 401

        async def over_quota(lesson_id, metadata):
            raise ProviderError(ErrorKind.QUOTA_EXCEEDED, "asset limit", status_code=400)

        h.provider._mint_direct_upload = over_quota
        r = await h.request_session(lesson)
        assert r.status_code == 429
        assert r.json()["detail"]["errorKind"] == "quota-exceeded"


@pytest.mark.asyncio
async def test_status_for_lesson_without_video(monkeypatch) -> None:
    h = await _harness(monkeypatch)
    async with h.client:
        s = await h.status("never-uploaded")
        assert (s["status"], s["version"]) == ("none", 0)

        r = await h.client.get("/api/v1/videos/never-uploaded/playback", headers=h.auth)
        assert r.status_code == 404


@pytest.mark.asyncio
async def test_delete_asset_returns_record_to_none(monkeypatch) -> None:
    lesson = _lesson()
    h = await _harness(monkeypatch, lesson)
    async with h.client:
        upload_id = (await h.request_session(lesson)).json()["uploadId"]
        h.provider.make_ready("A1")
        await h.deliver("asset.ready", upload_id=upload_id, asset_id="A1")

        r = await h.client.delete(f"/api/v1/videos/{lesson}/asset", headers=h.auth)
        assert r.status_code == 202
        assert h.provider.deleted == ["A1"]
        s = await h.status(lesson)
        assert s["status"] == "none"
        assert s["playbackId"] is None


@pytest.mark.asyncio
async def test_manual_reconcile_catches_up_with_provider(monkeypatch) -> None:
    lesson = _lesson()
    h = await _harness(monkeypatch, lesson)
    async with h.client:
        r = await h.client.post(f"/api/v1/videos/{lesson}/reconcile", headers=h.auth)
        assert r.json() == {"lessonId": lesson, "outcome": "not-in-flight"}

        upload_id = (await h.request_session(lesson)).json()["uploadId"]
        assert (await h.deliver("upload.created", upload_id=upload_id)).status_code == 204

        # Every later webhook was lost; the provider already finished encoding.
        h.provider.uploads[upload_id] = UploadLookup(upload_id=upload_id, state="asset_created", asset_id="A9")
        h.provider.make_ready("A9", playback_id="pb-A9")

        r = await h.client.post(f"/api/v1/videos/{lesson}/reconcile", headers=h.auth)
        assert r.status_code == 200
        assert r.json()["outcome"] == "applied"

        s = await h.status(lesson)
        assert (s["status"], s["playbackId"]) == ("ready", "pb-A9")


@pytest.mark.asyncio
async def test_event_past_the_budget_still_reaches_subscribers(monkeypatch) -> None:
    monkeypatch.setenv("WEBHOOK_BUDGET_SECONDS", "0.05")
    lesson = _lesson()
    h = await _harness(monkeypatch, lesson)

    published = []
    hub = h.app.state.hub
    publish = hub.publish

    async def recording_publish(change) -> None:
        published.append(change)
        await publish(change)

    monkeypatch.setattr(hub, "publish", recording_publish)

    describe = h.provider.describe_playback

    async def slow_describe(asset_id: str):
        await asyncio.sleep(0.3)
        return await describe(asset_id)

    monkeypatch.setattr(h.provider, "describe_playback", slow_describe)

    async with h.client:
        upload_id = (await h.request_session(lesson)).json()["uploadId"]
        h.provider.make_ready("A1", playback_id="pb-A1")
        event_id = f"evt-slow-{lesson}"
        r = await h.deliver("asset.ready", event_id=event_id, upload_id=upload_id, asset_id="A1")
        assert r.status_code == 503

        for _ in range(50):
            if any(c.status == "ready" for c in published):
                break
            await asyncio.sleep(0.05)
        assert [c.status for c in published if c.lesson_id == lesson][-1] == "ready"
        assert (await h.status(lesson))["status"] == "ready"

        # The provider's retry is a duplicate of the committed event.
        r = await h.deliver("asset.ready", event_id=event_id, upload_id=upload_id, asset_id="A1")
        assert r.status_code == 204
