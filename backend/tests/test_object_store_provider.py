from __future__ import annotations

import json

import httpx
import pytest

from fakes import FakeS3, access_error, make_settings, throttle_error
from video_ingest.constants import EventKind
from video_ingest.core.errors import ErrorKind, ProviderError
from video_ingest.providers.object_store import ObjectStoreProvider, manifest_key, source_key, thumbnail_key

NOW = 1_760_000_000


def _provider(s3: FakeS3 | None = None, transport: httpx.AsyncBaseTransport | None = None, **env) -> ObjectStoreProvider:
    env.setdefault("S3_BUCKET", "media")
    env.setdefault("S3_PUBLIC_BASE_URL", "https://cdn.test")
    settings = make_settings(PROVIDER_KIND="object-store", **env)
    return ObjectStoreProvider(settings, s3=s3 or FakeS3(), transport=transport, clock=lambda: NOW)


def test_requires_a_bucket() -> None:
    settings = make_settings()
    with pytest.raises(ValueError):
        ObjectStoreProvider(settings, s3=FakeS3())


@pytest.mark.asyncio
async def test_direct_upload_is_a_presigned_put_for_the_source_key() -> None:
    provider = _provider()
    upload = await provider.create_direct_upload("lesson-1")
    assert f"/media/uploads/{upload.upload_id}/source" in upload.put_url
    assert "method=put_object" in upload.put_url
    assert upload.expires_at.timestamp() == NOW + 3600


@pytest.mark.asyncio
async def test_describe_playback_reads_manifest_metadata() -> None:
    s3 = FakeS3()
    s3.put(manifest_key("a1"), b"#EXTM3U", {"duration": "42.5"})
    s3.put(thumbnail_key("a1"), b"jpg")
    provider = _provider(s3)

    playback = await provider.describe_playback("a1")
    assert playback.playback_id == "a1"
    assert playback.duration_seconds == 42.5
    assert playback.stream_url == "https://cdn.test/assets/a1/index.m3u8"
    assert playback.thumbnail_url == "https://cdn.test/assets/a1/thumbnail.jpg"


@pytest.mark.asyncio
async def test_describe_playback_failures() -> None:
    s3 = FakeS3()
    provider = _provider(s3)
    with pytest.raises(ProviderError) as exc:
        await provider.describe_playback("missing")
    assert exc.value.kind is ErrorKind.NOT_FOUND

    s3.put(manifest_key("a1"), b"#EXTM3U")
    with pytest.raises(ProviderError) as exc:
        await provider.describe_playback("a1")
    assert exc.value.kind is ErrorKind.PERMANENT

    s3.fail_with = access_error()
    with pytest.raises(ProviderError) as exc:
        await provider.describe_playback("a1")
    assert exc.value.kind is ErrorKind.AUTH_FAILED

    s3.fail_with = throttle_error()
    with pytest.raises(ProviderError) as exc:
        await provider.describe_playback("a1")
    assert exc.value.kind is ErrorKind.TRANSIENT


@pytest.mark.asyncio
async def test_delete_asset_removes_renditions_and_source() -> None:
    s3 = FakeS3()
    s3.put(manifest_key("a1"))
    s3.put("assets/a1/720p/seg0.ts")
    s3.put(source_key("a1"))
    s3.put(manifest_key("a2"))
    provider = _provider(s3)

    assert await provider.delete_asset("a1") is True
    assert list(s3.objects) == [manifest_key("a2")]
    assert await provider.delete_asset("a1") is False


@pytest.mark.asyncio
async def test_lookup_upload_and_asset_state_follow_the_objects() -> None:
    s3 = FakeS3()
    provider = _provider(s3)

    assert (await provider.lookup_upload("u1")).state == "waiting"
    with pytest.raises(ProviderError) as exc:
        await provider.asset_state("u1")
    assert exc.value.kind is ErrorKind.NOT_FOUND

    s3.put(source_key("u1"))
    lookup = await provider.lookup_upload("u1")
    assert (lookup.state, lookup.asset_id) == ("asset_created", "u1")
    assert (await provider.asset_state("u1")).state == "preparing"

    s3.put(manifest_key("u1"), metadata={"duration": "10"})
    state = await provider.asset_state("u1")
    assert (state.state, state.progress) == ("ready", 100)


def test_parse_event_defaults_asset_to_upload() -> None:
    provider = _provider()
    ready = provider._parse_event({"id": "e1", "type": "asset.ready", "data": {"upload_id": "u1"}})
    assert ready.kind is EventKind.ASSET_READY
    assert ready.asset_id == "u1"

    errored = provider._parse_event({"id": "e2", "type": "asset.errored", "data": {"upload_id": "u1"}})
    assert errored.error_kind == "encode-failed"

    unknown = provider._parse_event({"id": "e3", "type": "thumbnail.generated", "data": {}})
    assert unknown.kind is None


@pytest.mark.asyncio
async def test_source_url_is_a_presigned_get() -> None:
    url = await _provider().source_url("u1", expires_seconds=600)
    assert "uploads/u1/source" in url
    assert "method=get_object" in url
    assert "expires=600" in url


@pytest.mark.asyncio
async def test_request_encode() -> None:
    assert await _provider().request_encode("u1") is False

    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(202)

    provider = _provider(transport=httpx.MockTransport(handler), OBJECT_STORE_ENCODER_URL="https://encoder.test/jobs")
    assert await provider.request_encode("u1") is True
    assert seen == [
        {"upload_id": "u1", "bucket": "media", "source_key": "uploads/u1/source", "output_prefix": "assets/u1/"}
    ]

    failing = _provider(
        transport=httpx.MockTransport(lambda request: httpx.Response(502)),
        OBJECT_STORE_ENCODER_URL="https://encoder.test/jobs",
    )
    with pytest.raises(ProviderError) as exc:
        await failing.request_encode("u1")
    assert exc.value.kind is ErrorKind.TRANSIENT
