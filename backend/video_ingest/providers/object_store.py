from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any
from uuid import uuid4

import httpx
from botocore.exceptions import BotoCoreError, ClientError

from video_ingest.constants import EventKind, ProviderKind
from video_ingest.core.errors import ErrorKind, ProviderError, WebhookRejected
from video_ingest.core.settings import Settings
from video_ingest.core.storage import public_object_url, s3_client
from video_ingest.providers.base import (
    AssetState,
    DirectUpload,
    ParsedEvent,
    PlaybackDescriptor,
    UploadLookup,
    VideoProvider,
    normalize_error_kind,
    optional_progress,
    optional_str,
    parse_timestamp,
    require_str,
)

logger = logging.getLogger(__name__)


def source_key(upload_id: str) -> str:
    return f"uploads/{upload_id}/source"


def asset_prefix(asset_id: str) -> str:
    return f"assets/{asset_id}/"


def manifest_key(asset_id: str) -> str:
    return f"{asset_prefix(asset_id)}index.m3u8"


def thumbnail_key(asset_id: str) -> str:
    return f"{asset_prefix(asset_id)}thumbnail.jpg"


def _map_client_error(e: Exception, what: str) -> ProviderError:
    if isinstance(e, ClientError):
        code = str(e.response.get("Error", {}).get("Code") or "")
        status = int(e.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0)
        if code in ("404", "NoSuchKey", "NotFound") or status == 404:
            return ProviderError(ErrorKind.NOT_FOUND, f"{what}: not found", status_code=404)
        if code in ("AccessDenied", "InvalidAccessKeyId", "SignatureDoesNotMatch") or status in (401, 403):
            return ProviderError(ErrorKind.AUTH_FAILED, f"{what}: {code or status}", status_code=status or None)
        if code in ("SlowDown", "ServiceUnavailable", "RequestTimeout") or status >= 500:
            return ProviderError(ErrorKind.TRANSIENT, f"{what}: {code or status}", status_code=status or None)
        return ProviderError(ErrorKind.PERMANENT, f"{what}: {code or status}", status_code=status or None)
    return ProviderError(ErrorKind.TRANSIENT, f"{what}: {e}")


class ObjectStoreProvider(VideoProvider):
    """
    Legacy self-hosted path: presigned PUT into S3, HLS renditions written by
    an external encoder which calls back on the provider webhook.

    Layout:
      uploads/{upload_id}/source       raw upload (deterministic per upload)
      assets/{asset_id}/index.m3u8     HLS manifest, object metadata "duration"
      assets/{asset_id}/thumbnail.jpg  poster frame (optional)

    The asset id equals the upload id: one source produces one rendition set.
    """

    kind = ProviderKind.OBJECT_STORE
    signature_header_name = "x-storage-signature"

    def __init__(self, settings: Settings, *, s3=None, transport: httpx.AsyncBaseTransport | None = None, **kwargs) -> None:
        super().__init__(settings, **kwargs)
        if not settings.s3_bucket:
            raise ValueError("object-store provider requires S3_BUCKET")
        self._bucket = settings.s3_bucket
        self._s3 = s3 if s3 is not None else s3_client(settings)
        self._transport = transport

    async def _call(self, what: str, fn, **kwargs) -> Any:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, **kwargs),
                timeout=float(self._settings.provider_timeout_seconds),
            )
        except asyncio.TimeoutError as e:
            raise ProviderError(ErrorKind.TRANSIENT, f"{what}: timed out") from e
        except (ClientError, BotoCoreError) as e:
            raise _map_client_error(e, what) from e

    async def _mint_direct_upload(self, lesson_id: str, metadata: dict[str, Any]) -> DirectUpload:
        upload_id = uuid4().hex
        ttl = int(self._settings.upload_session_ttl_seconds)
        try:
            url = self._s3.generate_presigned_url(
                ClientMethod="put_object",
                Params={"Bucket": self._bucket, "Key": source_key(upload_id)},
                ExpiresIn=ttl,
            )
        except (ClientError, BotoCoreError) as e:
            raise _map_client_error(e, "presign upload") from e
        logger.info("Presigned object-store upload %s for lesson %s", upload_id, lesson_id)
        return DirectUpload(upload_id=upload_id, put_url=url, expires_at=self._now() + timedelta(seconds=ttl))

    def _parse_event(self, payload: dict[str, Any]) -> ParsedEvent:
        event_id = require_str(payload, "id")
        event_type = require_str(payload, "type")
        data = payload.get("data")
        if not isinstance(data, dict):
            raise WebhookRejected(ErrorKind.MALFORMED, "event has no 'data' object")

        try:
            kind: EventKind | None = EventKind(event_type)
        except ValueError:
            kind = None

        upload_id = optional_str(data, "upload_id")
        asset_id = optional_str(data, "asset_id")
        if kind in (EventKind.UPLOAD_ASSET_READY, EventKind.ASSET_READY) and not asset_id:
            asset_id = upload_id

        error_kind = None
        if kind is EventKind.ASSET_ERRORED:
            error_kind = normalize_error_kind(data.get("error_kind"), default="encode-failed")

        return ParsedEvent(
            provider=self.name,
            event_id=event_id,
            provider_type=event_type,
            kind=kind,
            provider_timestamp=parse_timestamp(payload.get("created_at")),
            upload_id=upload_id,
            asset_id=asset_id,
            progress=optional_progress(data.get("progress")),
            error_kind=error_kind,
            error_message=optional_str(data, "error_message") if kind is EventKind.ASSET_ERRORED else None,
            raw_payload=payload,
        )

    async def _exists(self, key: str) -> dict[str, Any] | None:
        try:
            return await self._call(f"head {key}", self._s3.head_object, Bucket=self._bucket, Key=key)
        except ProviderError as e:
            if e.kind is ErrorKind.NOT_FOUND:
                return None
            raise

    async def describe_playback(self, asset_id: str) -> PlaybackDescriptor:
        head = await self._exists(manifest_key(asset_id))
        if head is None:
            raise ProviderError(ErrorKind.NOT_FOUND, f"no HLS manifest for asset {asset_id}")
        raw_duration = (head.get("Metadata") or {}).get("duration")
        try:
            duration = float(raw_duration)
        except (TypeError, ValueError):
            raise ProviderError(ErrorKind.PERMANENT, f"manifest for asset {asset_id} has no duration metadata") from None

        thumb = await self._exists(thumbnail_key(asset_id))
        return PlaybackDescriptor(
            playback_id=asset_id,
            duration_seconds=duration,
            stream_url=public_object_url(self._settings, manifest_key(asset_id)),
            thumbnail_url=public_object_url(self._settings, thumbnail_key(asset_id)) if thumb is not None else None,
            captions_urls=[],
        )

    async def delete_asset(self, asset_id: str) -> bool:
        keys: list[str] = []
        for prefix in (asset_prefix(asset_id), f"uploads/{asset_id}/"):
            listing = await self._call(
                f"list {prefix}", self._s3.list_objects_v2, Bucket=self._bucket, Prefix=prefix
            )
            keys.extend(obj["Key"] for obj in (listing.get("Contents") or []))
        if not keys:
            return False
        # delete_objects takes at most 1000 keys per call.
        for i in range(0, len(keys), 1000):
            chunk = keys[i : i + 1000]
            await self._call(
                "delete objects",
                self._s3.delete_objects,
                Bucket=self._bucket,
                Delete={"Objects": [{"Key": k} for k in chunk], "Quiet": True},
            )
        logger.info("Deleted %d object(s) for object-store asset %s", len(keys), asset_id)
        return True

    async def lookup_upload(self, upload_id: str) -> UploadLookup:
        head = await self._exists(source_key(upload_id))
        if head is None:
            return UploadLookup(upload_id=upload_id, state="waiting")
        return UploadLookup(upload_id=upload_id, state="asset_created", asset_id=upload_id)

    async def asset_state(self, asset_id: str) -> AssetState:
        if await self._exists(manifest_key(asset_id)) is not None:
            return AssetState(asset_id=asset_id, state="ready", progress=100)
        if await self._exists(source_key(asset_id)) is not None:
            return AssetState(asset_id=asset_id, state="preparing")
        raise ProviderError(ErrorKind.NOT_FOUND, f"object-store asset {asset_id} not found")

    async def source_url(self, asset_id: str, *, expires_seconds: int = 3600) -> str:
        """Presigned GET for the original upload (used when migrating to managed streaming)."""
        try:
            return self._s3.generate_presigned_url(
                ClientMethod="get_object",
                Params={"Bucket": self._bucket, "Key": source_key(asset_id)},
                ExpiresIn=int(expires_seconds),
            )
        except (ClientError, BotoCoreError) as e:
            raise _map_client_error(e, "presign source") from e

    async def request_encode(self, upload_id: str) -> bool:
        """
        Compatibility hook: ask the external encoder to (re)build HLS renditions
        for an uploaded source. Returns False when no encoder is configured.
        """
        url = self._settings.object_store_encoder_url
        if not url:
            logger.info("No encoder configured; not requesting encode for upload %s", upload_id)
            return False
        body = {
            "upload_id": upload_id,
            "bucket": self._bucket,
            "source_key": source_key(upload_id),
            "output_prefix": asset_prefix(upload_id),
        }
        try:
            async with httpx.AsyncClient(
                timeout=float(self._settings.provider_timeout_seconds), transport=self._transport
            ) as client:
                res = await client.post(url, json=body)
        except httpx.TimeoutException as e:
            raise ProviderError(ErrorKind.TRANSIENT, "encoder request timed out") from e
        except httpx.TransportError as e:
            raise ProviderError(ErrorKind.TRANSIENT, f"encoder unreachable: {e}") from e
        if res.status_code >= 500:
            raise ProviderError(ErrorKind.TRANSIENT, f"encoder returned {res.status_code}", status_code=res.status_code)
        if res.status_code >= 400:
            raise ProviderError(ErrorKind.PERMANENT, f"encoder returned {res.status_code}", status_code=res.status_code)
        logger.info("Requested encode for object-store upload %s", upload_id)
        return True
