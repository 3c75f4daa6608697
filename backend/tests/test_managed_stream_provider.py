from __future__ import annotations

import base64
import json

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from fakes import make_settings
from video_ingest.constants import EventKind
from video_ingest.core.errors import ErrorKind, ProviderError, WebhookRejected
from video_ingest.providers.managed_stream import ManagedStreamProvider

NOW = 1_760_000_000


def _provider(handler, **env) -> ManagedStreamProvider:
    settings = make_settings(PROVIDER_TOKEN_ID="tok", PROVIDER_TOKEN_SECRET="sec", **env)
    return ManagedStreamProvider(settings, transport=httpx.MockTransport(handler), clock=lambda: NOW)


def _ready_asset(**overrides) -> dict:
    asset = {
        "id": "asset-1",
        "status": "ready",
        "duration": 612.4,
        "playback_ids": [{"id": "pb-public", "policy": "public"}],
        "tracks": [
            {"type": "video", "id": "v1"},
            {"type": "text", "id": "tx-en", "status": "ready"},
            {"type": "text", "id": "tx-fr", "status": "preparing"},
        ],
    }
    asset.update(overrides)
    return asset


def _private_key_b64() -> str:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return base64.b64encode(pem).decode("ascii")


@pytest.mark.asyncio
async def test_create_direct_upload_sends_lesson_passthrough_and_reuses_url() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(201, json={"data": {"id": "up-1", "url": "https://storage.test/put", "timeout": 3600}})

    provider = _provider(handler)
    first = await provider.create_direct_upload("lesson-1", {"title": "Intro", "ignored": "x"})
    second = await provider.create_direct_upload("lesson-1")
    await provider.aclose()

    assert first == second
    assert len(calls) == 1
    assert calls[0].headers["authorization"].startswith("Basic ")
    body = json.loads(calls[0].content)
    assert body["timeout"] == 3600
    assert body["new_asset_settings"]["passthrough"] == "lesson-1"
    assert body["new_asset_settings"]["meta"] == {"title": "Intro"}
    assert first.upload_id == "up-1"
    assert first.expires_at.timestamp() == NOW + 3600


@pytest.mark.asyncio
async def test_forget_direct_upload_mints_a_fresh_url() -> None:
    minted = iter(["up-1", "up-2"])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(201, json={"data": {"id": next(minted), "url": "https://storage.test/put"}})

    provider = _provider(handler)
    first = await provider.create_direct_upload("lesson-1")
    provider.forget_direct_upload("lesson-1")
    second = await provider.create_direct_upload("lesson-1")
    await provider.aclose()
    assert (first.upload_id, second.upload_id) == ("up-1", "up-2")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,body,kind",
    [
        (401, {"error": {"messages": ["bad credentials"]}}, ErrorKind.AUTH_FAILED),
        (404, {"error": {"messages": ["not found"]}}, ErrorKind.NOT_FOUND),
        (429, {"error": {"messages": ["slow down"]}}, ErrorKind.QUOTA_EXCEEDED),
        (400, {"error": {"messages": ["You are exceeding this limit of 10 assets"]}}, ErrorKind.QUOTA_EXCEEDED),
        (400, {"error": {"messages": ["invalid cors_origin"]}}, ErrorKind.PERMANENT),
        (503, {}, ErrorKind.TRANSIENT),
    ],
)
async def test_error_statuses_map_to_kinds(status, body, kind) -> None:
    provider = _provider(lambda request: httpx.Response(status, json=body))
    with pytest.raises(ProviderError) as exc:
        await provider.create_direct_upload("lesson-1")
    await provider.aclose()
    assert exc.value.kind is kind
    assert exc.value.status_code == status


@pytest.mark.asyncio
async def test_transport_failure_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = _provider(handler)
    with pytest.raises(ProviderError) as exc:
        await provider.asset_state("asset-1")
    await provider.aclose()
    assert exc.value.kind is ErrorKind.TRANSIENT
    assert exc.value.retryable is True


@pytest.mark.asyncio
async def test_describe_playback_public() -> None:
    provider = _provider(lambda request: httpx.Response(200, json={"data": _ready_asset()}))
    playback = await provider.describe_playback("asset-1")
    await provider.aclose()

    assert playback.playback_id == "pb-public"
    assert playback.duration_seconds == 612.4
    assert playback.stream_url == "https://stream.mux.com/pb-public.m3u8"
    assert playback.thumbnail_url == "https://image.mux.com/pb-public/thumbnail.jpg"
    assert playback.captions_urls == ["https://stream.mux.com/pb-public/text/tx-en.vtt"]


@pytest.mark.asyncio
async def test_describe_playback_creates_missing_playback_id() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(f"{request.method} {request.url.path}")
        if request.method == "POST":
            return httpx.Response(201, json={"data": {"id": "pb-new", "policy": "public"}})
        return httpx.Response(200, json={"data": _ready_asset(playback_ids=[])})

    provider = _provider(handler)
    playback = await provider.describe_playback("asset-1")
    await provider.aclose()
    assert playback.playback_id == "pb-new"
    assert seen == ["GET /video/v1/assets/asset-1", "POST /video/v1/assets/asset-1/playback-ids"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "asset,kind",
    [
        ({"status": "preparing"}, ErrorKind.TRANSIENT),
        ({"status": "errored"}, ErrorKind.PERMANENT),
        ({"duration": None}, ErrorKind.PERMANENT),
    ],
)
async def test_describe_playback_failures(asset, kind) -> None:
    provider = _provider(lambda request: httpx.Response(200, json={"data": _ready_asset(**asset)}))
    with pytest.raises(ProviderError) as exc:
        await provider.describe_playback("asset-1")
    await provider.aclose()
    assert exc.value.kind is kind


@pytest.mark.asyncio
async def test_signed_playback_urls_carry_rs256_tokens() -> None:
    asset = _ready_asset(playback_ids=[{"id": "pb-signed", "policy": "signed"}])
    provider = _provider(
        lambda request: httpx.Response(200, json={"data": asset}),
        PROVIDER_PLAYBACK_POLICY="signed",
        PROVIDER_SIGNING_KEY_ID="key-1",
        PROVIDER_SIGNING_KEY_PRIVATE=_private_key_b64(),
    )
    playback = await provider.describe_playback("asset-1")
    await provider.aclose()

    url, _, token = playback.stream_url.partition("?token=")
    assert url == "https://stream.mux.com/pb-signed.m3u8"
    assert jwt.get_unverified_header(token)["kid"] == "key-1"
    claims = jwt.decode(token, options={"verify_signature": False})
    assert claims["sub"] == "pb-signed"
    assert claims["aud"] == "v"
    assert "token=" in (playback.thumbnail_url or "")


@pytest.mark.asyncio
async def test_signed_playback_without_key_is_auth_failure() -> None:
    asset = _ready_asset(playback_ids=[{"id": "pb-signed", "policy": "signed"}])
    provider = _provider(lambda request: httpx.Response(200, json={"data": asset}), PROVIDER_PLAYBACK_POLICY="signed")
    with pytest.raises(ProviderError) as exc:
        await provider.describe_playback("asset-1")
    await provider.aclose()
    assert exc.value.kind is ErrorKind.AUTH_FAILED


@pytest.mark.asyncio
async def test_delete_asset_reports_missing_assets() -> None:
    statuses = iter([204, 404])
    provider = _provider(lambda request: httpx.Response(next(statuses)))
    assert await provider.delete_asset("asset-1") is True
    assert await provider.delete_asset("asset-1") is False
    await provider.aclose()


@pytest.mark.asyncio
async def test_lookup_upload_and_asset_state() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.startswith("/video/v1/uploads/"):
            return httpx.Response(200, json={"data": {"id": "up-1", "status": "asset_created", "asset_id": "asset-1"}})
        return httpx.Response(
            200,
            json={"data": {"id": "asset-1", "status": "errored", "errors": {"type": "invalid_input", "messages": ["bad codec"]}}},
        )

    provider = _provider(handler)
    lookup = await provider.lookup_upload("up-1")
    state = await provider.asset_state("asset-1")
    await provider.aclose()

    assert (lookup.state, lookup.asset_id) == ("asset_created", "asset-1")
    assert state.state == "errored"
    assert state.error_kind == "invalid-input"
    assert state.error_message == "bad codec"


def _parse(provider: ManagedStreamProvider, payload: dict):
    return provider._parse_event(payload)


def test_parse_upload_and_asset_events() -> None:
    provider = _provider(lambda request: httpx.Response(500))

    created = _parse(provider, {"id": "e1", "type": "video.upload.created", "data": {"id": "up-1"}})
    assert created.kind is EventKind.UPLOAD_CREATED
    assert created.upload_id == "up-1"

    linked = _parse(provider, {"id": "e2", "type": "video.upload.asset_created", "data": {"id": "up-1", "asset_id": "a-1"}})
    assert linked.kind is EventKind.UPLOAD_ASSET_READY
    assert (linked.upload_id, linked.asset_id) == ("up-1", "a-1")

    ready = _parse(
        provider,
        {"id": "e3", "type": "video.asset.ready", "created_at": "2025-10-09T08:00:00Z", "data": {"id": "a-1", "upload_id": "up-1"}},
    )
    assert ready.kind is EventKind.ASSET_READY
    assert (ready.upload_id, ready.asset_id) == ("up-1", "a-1")
    assert ready.provider_timestamp is not None and ready.provider_timestamp.year == 2025

    errored = _parse(
        provider,
        {"id": "e4", "type": "video.asset.errored", "data": {"id": "a-1", "errors": {"type": "invalid_input", "messages": ["x"]}}},
    )
    assert errored.kind is EventKind.ASSET_ERRORED
    assert errored.error_kind == "invalid-input"

    cancelled = _parse(provider, {"id": "e5", "type": "video.upload.cancelled", "data": {"id": "up-1"}})
    assert cancelled.kind is EventKind.ASSET_ERRORED
    assert cancelled.error_kind == "upload-cancelled"


def test_parse_progress_and_ignored_events() -> None:
    provider = _provider(lambda request: httpx.Response(500))

    progress = _parse(
        provider, {"id": "e1", "type": "video.asset.updated", "data": {"id": "a-1", "progress": {"progress": 37.8}}}
    )
    assert progress.kind is EventKind.PROGRESS
    assert progress.progress == 37

    metadata_only = _parse(provider, {"id": "e2", "type": "video.asset.updated", "data": {"id": "a-1"}})
    assert metadata_only.kind is None

    unknown = _parse(provider, {"id": "e3", "type": "video.asset.static_renditions.ready", "data": {"id": "a-1"}})
    assert unknown.kind is None

    with pytest.raises(WebhookRejected):
        _parse(provider, {"id": "e4", "type": "video.asset.ready"})
    with pytest.raises(WebhookRejected):
        _parse(provider, {"type": "video.asset.ready", "data": {"id": "a-1"}})
