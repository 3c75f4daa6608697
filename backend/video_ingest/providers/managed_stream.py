from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

import httpx

from video_ingest.constants import EventKind, ProviderKind
from video_ingest.core.errors import ErrorKind, ProviderError, WebhookRejected, provider_error_from_status
from video_ingest.core.security import sign_playback_token
from video_ingest.core.settings import Settings
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


STREAM_BASE = "https://stream.mux.com"
IMAGE_BASE = "https://image.mux.com"

# Provider event type -> pipeline event kind. Types not listed are accepted and ignored.
_EVENT_KINDS: dict[str, EventKind] = {
    "video.upload.created": EventKind.UPLOAD_CREATED,
    "video.upload.asset_created": EventKind.UPLOAD_ASSET_READY,
    "video.asset.created": EventKind.UPLOAD_ASSET_READY,
    "video.asset.updated": EventKind.PROGRESS,
    "video.asset.ready": EventKind.ASSET_READY,
    "video.asset.errored": EventKind.ASSET_ERRORED,
    "video.upload.errored": EventKind.ASSET_ERRORED,
    "video.upload.cancelled": EventKind.ASSET_ERRORED,
    "video.asset.deleted": EventKind.ASSET_DELETED,
}

# Messages the provider returns with a 400 when the account's asset cap is hit.
_QUOTA_MARKERS = ("exceeding this limit", "asset limit", "10 assets")


class ManagedStreamProvider(VideoProvider):
    """Managed adaptive-streaming service (Mux Video API v1)."""

    kind = ProviderKind.MANAGED_STREAM
    signature_header_name = "mux-signature"

    def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None, **kwargs) -> None:
        super().__init__(settings, **kwargs)
        auth = None
        if settings.provider_token_id and settings.provider_token_secret:
            auth = httpx.BasicAuth(settings.provider_token_id, settings.provider_token_secret)
        self._client = httpx.AsyncClient(
            base_url=settings.provider_api_base.rstrip("/"),
            auth=auth,
            timeout=float(settings.provider_timeout_seconds),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        try:
            res = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderError(ErrorKind.TRANSIENT, f"provider call timed out: {method} {path}") from e
        except httpx.TransportError as e:
            raise ProviderError(ErrorKind.TRANSIENT, f"provider unreachable: {e}") from e

        if res.status_code == 204:
            return {}
        if res.status_code >= 400:
            raise self._error_from_response(res)
        try:
            body = res.json()
        except ValueError as e:
            raise ProviderError(ErrorKind.TRANSIENT, "provider returned a non-JSON body") from e
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise ProviderError(ErrorKind.PERMANENT, "provider response missing 'data'")
        return data

    @staticmethod
    def _error_from_response(res: httpx.Response) -> ProviderError:
        messages: list[str] = []
        try:
            err = (res.json() or {}).get("error") or {}
            messages = [str(m) for m in (err.get("messages") or [])]
        except (ValueError, AttributeError):
            pass
        message = "; ".join(messages) or res.text[:500] or f"HTTP {res.status_code}"
        if res.status_code == 400 and any(m in message.lower() for m in _QUOTA_MARKERS):
            return ProviderError(ErrorKind.QUOTA_EXCEEDED, message, status_code=res.status_code)
        return provider_error_from_status(res.status_code, message)

    async def _mint_direct_upload(self, lesson_id: str, metadata: dict[str, Any]) -> DirectUpload:
        ttl = int(self._settings.upload_session_ttl_seconds)
        body = {
            "cors_origin": self._settings.provider_cors_origin,
            "timeout": ttl,
            "new_asset_settings": {
                "playback_policy": [self._settings.provider_playback_policy],
                # The provider caps passthrough at 255 chars; the lesson id is all we need back.
                "passthrough": lesson_id[:255],
                "normalize_audio": True,
                "meta": {k: str(v)[:128] for k, v in metadata.items() if k in ("title", "creator_id", "external_id")},
            },
        }
        data = await self._request("POST", "/video/v1/uploads", json=body)
        upload_id = data.get("id")
        put_url = data.get("url")
        if not upload_id or not put_url:
            raise ProviderError(ErrorKind.PERMANENT, "direct upload response missing id/url")
        timeout = int(data.get("timeout") or ttl)
        logger.info("Created direct upload %s for lesson %s", upload_id, lesson_id)
        return DirectUpload(upload_id=str(upload_id), put_url=str(put_url), expires_at=self._now() + timedelta(seconds=timeout))

    def _parse_event(self, payload: dict[str, Any]) -> ParsedEvent:
        event_id = require_str(payload, "id")
        event_type = require_str(payload, "type")
        data = payload.get("data")
        if not isinstance(data, dict):
            raise WebhookRejected(ErrorKind.MALFORMED, "event has no 'data' object")

        kind = _EVENT_KINDS.get(event_type)
        upload_id: str | None
        asset_id: str | None
        if event_type.startswith("video.upload."):
            upload_id = optional_str(data, "id")
            asset_id = optional_str(data, "asset_id")
        else:
            asset_id = optional_str(data, "id")
            upload_id = optional_str(data, "upload_id")

        progress = None
        error_kind = None
        error_message = None
        if event_type == "video.asset.updated":
            prog = data.get("progress")
            progress = optional_progress(prog.get("progress")) if isinstance(prog, dict) else None
            if progress is None:
                # Metadata-only update; nothing for the pipeline to do.
                kind = None
        elif event_type == "video.asset.errored":
            errors = data.get("errors") if isinstance(data.get("errors"), dict) else {}
            error_kind = normalize_error_kind(errors.get("type"))
            error_message = "; ".join(str(m) for m in (errors.get("messages") or [])) or None
        elif event_type in ("video.upload.errored", "video.upload.cancelled"):
            error_kind = "upload-cancelled" if event_type.endswith("cancelled") else "upload-errored"
            err = data.get("error") if isinstance(data.get("error"), dict) else {}
            error_message = err.get("message") or None

        return ParsedEvent(
            provider=self.name,
            event_id=event_id,
            provider_type=event_type,
            kind=kind,
            provider_timestamp=parse_timestamp(payload.get("created_at")),
            upload_id=upload_id,
            asset_id=asset_id,
            progress=progress,
            error_kind=error_kind,
            error_message=error_message,
            raw_payload=payload,
        )

    def _playback_urls(self, playback_id: str, policy: str) -> tuple[str, str]:
        stream_url = f"{STREAM_BASE}/{playback_id}.m3u8"
        thumbnail_url = f"{IMAGE_BASE}/{playback_id}/thumbnail.jpg"
        if policy != "signed":
            return stream_url, thumbnail_url

        key_id = self._settings.provider_signing_key_id
        key = self._settings.provider_signing_key_private
        if not key_id or not key:
            raise ProviderError(ErrorKind.AUTH_FAILED, "signed playback requires a signing key")
        ttl = int(self._settings.playback_token_ttl_seconds)
        try:
            video_token = sign_playback_token(
                playback_id=playback_id, audience="v", key_id=key_id, private_key_b64=key, ttl_seconds=ttl
            )
            thumb_token = sign_playback_token(
                playback_id=playback_id, audience="t", key_id=key_id, private_key_b64=key, ttl_seconds=ttl
            )
        except ValueError as e:
            raise ProviderError(ErrorKind.AUTH_FAILED, str(e)) from e
        return f"{stream_url}?token={video_token}", f"{thumbnail_url}?token={thumb_token}"

    async def describe_playback(self, asset_id: str) -> PlaybackDescriptor:
        asset = await self._request("GET", f"/video/v1/assets/{asset_id}")
        status = str(asset.get("status") or "")
        if status == "errored":
            raise ProviderError(ErrorKind.PERMANENT, f"asset {asset_id} is errored")
        if status != "ready":
            raise ProviderError(ErrorKind.TRANSIENT, f"asset {asset_id} is not ready yet ({status or 'unknown'})")

        wanted = self._settings.provider_playback_policy
        playback_ids = [p for p in (asset.get("playback_ids") or []) if isinstance(p, dict) and p.get("id")]
        match = next((p for p in playback_ids if p.get("policy") == wanted), None) or (playback_ids[0] if playback_ids else None)
        if match is None:
            match = await self._request("POST", f"/video/v1/assets/{asset_id}/playback-ids", json={"policy": wanted})
        playback_id = str(match["id"])
        policy = str(match.get("policy") or wanted)

        duration = asset.get("duration")
        if duration is None:
            raise ProviderError(ErrorKind.PERMANENT, f"asset {asset_id} reports no duration")

        stream_url, thumbnail_url = self._playback_urls(playback_id, policy)
        captions = [
            f"{STREAM_BASE}/{playback_id}/text/{t['id']}.vtt"
            for t in (asset.get("tracks") or [])
            if isinstance(t, dict) and t.get("type") == "text" and t.get("id") and t.get("status", "ready") == "ready"
        ]
        return PlaybackDescriptor(
            playback_id=playback_id,
            duration_seconds=float(duration),
            stream_url=stream_url,
            thumbnail_url=thumbnail_url,
            captions_urls=captions,
        )

    async def delete_asset(self, asset_id: str) -> bool:
        try:
            await self._request("DELETE", f"/video/v1/assets/{asset_id}")
        except ProviderError as e:
            if e.kind is ErrorKind.NOT_FOUND:
                return False
            raise
        logger.info("Deleted managed-stream asset %s", asset_id)
        return True

    async def lookup_upload(self, upload_id: str) -> UploadLookup:
        data = await self._request("GET", f"/video/v1/uploads/{upload_id}")
        return UploadLookup(
            upload_id=upload_id,
            state=str(data.get("status") or "waiting"),
            asset_id=(str(data["asset_id"]) if data.get("asset_id") else None),
        )

    async def asset_state(self, asset_id: str) -> AssetState:
        data = await self._request("GET", f"/video/v1/assets/{asset_id}")
        status = str(data.get("status") or "preparing")
        progress = None
        prog = data.get("progress")
        if isinstance(prog, dict) and prog.get("progress") is not None:
            try:
                progress = max(0, min(100, int(float(prog["progress"]))))
            except (TypeError, ValueError):
                progress = None
        errors = data.get("errors") if isinstance(data.get("errors"), dict) else {}
        return AssetState(
            asset_id=asset_id,
            state=status,
            progress=progress,
            error_kind=normalize_error_kind(errors.get("type")) if status == "errored" else None,
            error_message=("; ".join(str(m) for m in (errors.get("messages") or [])) or None) if status == "errored" else None,
        )
