from __future__ import annotations

import abc
import json
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from video_ingest.constants import EventKind, ProviderKind
from video_ingest.core.errors import ErrorKind, WebhookRejected
from video_ingest.core.settings import Settings
from video_ingest.providers.signatures import verify_signature

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DirectUpload:
    upload_id: str
    put_url: str
    expires_at: datetime


@dataclass(frozen=True)
class ParsedEvent:
    """A verified provider callback normalised to the pipeline's event kinds.

    `kind` is None for provider event types the pipeline does not act on.
    """

    provider: str
    event_id: str
    provider_type: str
    kind: EventKind | None
    provider_timestamp: datetime | None = None
    upload_id: str | None = None
    asset_id: str | None = None
    progress: int | None = None
    error_kind: str | None = None
    error_message: str | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PlaybackDescriptor:
    playback_id: str
    duration_seconds: float
    stream_url: str
    thumbnail_url: str | None = None
    captions_urls: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class UploadLookup:
    upload_id: str
    # waiting / asset_created / errored / cancelled / timed_out
    state: str
    asset_id: str | None = None


@dataclass(frozen=True)
class AssetState:
    asset_id: str
    # preparing / ready / errored
    state: str
    progress: int | None = None
    error_kind: str | None = None
    error_message: str | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Accept ISO-8601 strings or unix seconds; None when absent or unparseable."""
    if value is None or value == "":
        return None
    try:
        if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        s = str(value).strip().replace("Z", "+00:00")
        dt = datetime.fromisoformat(s)
    except (TypeError, ValueError, OverflowError):
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def normalize_error_kind(value: Any, default: str = "provider-error") -> str:
    s = str(value or "").strip().lower().replace("_", "-").replace(" ", "-")
    return s[:64] or default


class VideoProvider(abc.ABC):
    """
    Contract every streaming provider variant implements.

    All network-bound methods raise ProviderError (typed by ErrorKind) on
    failure; `verify_webhook` raises WebhookRejected.
    """

    kind: ProviderKind
    signature_header_name: str

    def __init__(self, settings: Settings, *, clock: Callable[[], float] = time.time) -> None:
        self._settings = settings
        self._clock = clock
        # (lesson_id, intent) -> DirectUpload; repeated requests inside the expiry reuse it.
        self._recent_uploads: dict[tuple[str, str], DirectUpload] = {}

    @property
    def name(self) -> str:
        return self.kind.value

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def create_direct_upload(
        self,
        lesson_id: str,
        metadata: Mapping[str, Any] | None = None,
        *,
        intent: str = "upload",
    ) -> DirectUpload:
        key = (lesson_id, intent)
        cached = self._recent_uploads.get(key)
        # Leave a margin so a caller never receives a URL about to lapse.
        if cached is not None and cached.expires_at - timedelta(seconds=30) > self._now():
            return cached

        upload = await self._mint_direct_upload(lesson_id, dict(metadata or {}))
        self._recent_uploads[key] = upload
        self._forget_expired()
        return upload

    def forget_direct_upload(self, lesson_id: str, *, intent: str = "upload") -> None:
        self._recent_uploads.pop((lesson_id, intent), None)

    def _forget_expired(self) -> None:
        now = self._now()
        for k in [k for k, u in self._recent_uploads.items() if u.expires_at <= now]:
            del self._recent_uploads[k]

    def verify_webhook(self, headers: Mapping[str, str], raw_body: bytes) -> ParsedEvent:
        secret = (self._settings.provider_webhook_secret or "").strip()
        if not secret:
            raise WebhookRejected(ErrorKind.AUTH_FAILED, "webhook secret is not configured")

        header = _header(headers, self.signature_header_name)
        verify_signature(
            header,
            raw_body,
            secret=secret,
            tolerance_seconds=int(self._settings.provider_signature_tolerance_seconds),
            clock=self._clock,
        )

        try:
            payload = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise WebhookRejected(ErrorKind.MALFORMED, f"body is not JSON: {e}") from e
        if not isinstance(payload, dict):
            raise WebhookRejected(ErrorKind.MALFORMED, "body is not a JSON object")

        event = self._parse_event(payload)
        if event.kind is EventKind.ASSET_READY and not event.asset_id:
            raise WebhookRejected(ErrorKind.MALFORMED, "asset.ready event without asset id")
        return event

    @abc.abstractmethod
    def _parse_event(self, payload: dict[str, Any]) -> ParsedEvent:
        """Map a verified JSON payload to a ParsedEvent (raise WebhookRejected(MALFORMED))."""

    @abc.abstractmethod
    async def _mint_direct_upload(self, lesson_id: str, metadata: dict[str, Any]) -> DirectUpload:
        ...

    @abc.abstractmethod
    async def describe_playback(self, asset_id: str) -> PlaybackDescriptor:
        ...

    @abc.abstractmethod
    async def delete_asset(self, asset_id: str) -> bool:
        """Delete a provider asset. Returns False when the asset did not exist."""

    @abc.abstractmethod
    async def lookup_upload(self, upload_id: str) -> UploadLookup:
        ...

    @abc.abstractmethod
    async def asset_state(self, asset_id: str) -> AssetState:
        ...

    async def aclose(self) -> None:
        return None


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for k, v in headers.items():
            if k.lower() == lowered:
                return v
    return value


def require_str(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise WebhookRejected(ErrorKind.MALFORMED, f"missing or empty '{key}'")
    return value.strip()


def optional_str(payload: Mapping[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise WebhookRejected(ErrorKind.MALFORMED, f"'{key}' must be a string")
    return value.strip() or None


def optional_progress(value: Any) -> int | None:
    if value is None:
        return None
    try:
        p = float(value)
    except (TypeError, ValueError):
        raise WebhookRejected(ErrorKind.MALFORMED, "progress must be numeric") from None
    if p != p or p < 0 or p > 100:
        raise WebhookRejected(ErrorKind.MALFORMED, "progress must be within 0..100")
    return int(p)
