from __future__ import annotations

import asyncio
import functools
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response, status

from video_ingest.api.deps import get_processor, get_registry
from video_ingest.constants import ProviderKind
from video_ingest.core.errors import ErrorKind, WebhookRejected
from video_ingest.core.rate_limit import FixedWindowRateLimiter
from video_ingest.core.settings import Settings, get_settings
from video_ingest.providers.registry import ProviderRegistry
from video_ingest.services.deletion import delete_with_retries
from video_ingest.services.event_processor import EventProcessor
from video_ingest.services.state_machine import Outcome

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


_limiter = FixedWindowRateLimiter()

# Events still being applied after their webhook answered 503.
_overrunning: set[asyncio.Task] = set()


def _client_ip(request: Request) -> str:
    # Honor X-Forwarded-For if present (first IP), else use request.client.
    xff = (request.headers.get("x-forwarded-for") or "").strip()
    if xff:
        return xff.split(",")[0].strip()
    return (getattr(request.client, "host", None) or "unknown").strip()


async def _delete_superseded(registry: ProviderRegistry, provider_kind: str, asset_id: str) -> None:
    if not await delete_with_retries(registry.get(provider_kind), asset_id):
        logger.warning("Superseded %s asset %s was not deleted", provider_kind, asset_id)


def _finish_overrun(registry: ProviderRegistry, task: asyncio.Task) -> None:
    _overrunning.discard(task)
    if task.cancelled():
        return
    if task.exception() is not None:
        logger.error("Webhook event failed after its budget ran out", exc_info=task.exception())
        return
    result = task.result()
    if result.superseded_asset is not None:
        cleanup = asyncio.ensure_future(_delete_superseded(registry, *result.superseded_asset))
        _overrunning.add(cleanup)
        cleanup.add_done_callback(_overrunning.discard)


async def _handle(
    kind: ProviderKind,
    request: Request,
    background_tasks: BackgroundTasks,
    registry: ProviderRegistry,
    processor: EventProcessor,
    settings: Settings,
) -> Response:
    """
    CSRF-exempt webhook handler shared by every provider kind.

    - 204: accepted (including duplicates and events we do not act on)
    - 400: signature or body rejected; the provider should not retry
    - 503: replay window, version conflicts, unresolvable playback or budget exceeded
    """
    if not (settings.provider_webhook_secret or "").strip():
        raise HTTPException(status_code=status.HTTP_501_NOT_IMPLEMENTED, detail="Provider webhook is not configured")

    # Basic best-effort rate limit (per-IP, per-process).
    ip = _client_ip(request)
    rl = await _limiter.hit(
        key=f"provider_webhook:{ip}",
        limit=int(settings.webhook_rate_limit_per_minute),
        window_seconds=60,
    )
    if not rl.allowed:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Rate limit exceeded")

    # The signature covers the exact bytes; never re-serialize before verifying.
    raw_body = await request.body()
    provider = registry.get(kind)
    try:
        event = provider.verify_webhook(request.headers, raw_body)
    except WebhookRejected as e:
        logger.warning("Rejected %s webhook from %s: %s (%s)", kind.value, ip, e.message, e.kind.value)
        if e.kind is ErrorKind.REPLAY:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Stale signature") from e
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.kind.value) from e

    # The budget bounds the response, not the work: a commit is always followed by its publish.
    task = asyncio.ensure_future(processor.process(event))
    try:
        result = await asyncio.wait_for(asyncio.shield(task), timeout=float(settings.webhook_budget_seconds))
    except asyncio.TimeoutError:
        logger.warning("%s webhook %s exceeded the processing budget", kind.value, event.event_id)
        _overrunning.add(task)
        task.add_done_callback(functools.partial(_finish_overrun, registry))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Processing budget exceeded")

    if result.outcome is Outcome.TRANSIENT:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result.reason)

    if result.superseded_asset is not None:
        provider_kind, asset_id = result.superseded_asset
        background_tasks.add_task(_delete_superseded, registry, provider_kind, asset_id)

    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/provider", status_code=status.HTTP_204_NO_CONTENT)
async def provider_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    registry: ProviderRegistry = Depends(get_registry),
    processor: EventProcessor = Depends(get_processor),
    settings: Settings = Depends(get_settings),
) -> Response:
    return await _handle(registry.default_kind, request, background_tasks, registry, processor, settings)


@router.post("/provider/{kind}", status_code=status.HTTP_204_NO_CONTENT)
async def provider_webhook_for_kind(
    kind: str,
    request: Request,
    background_tasks: BackgroundTasks,
    registry: ProviderRegistry = Depends(get_registry),
    processor: EventProcessor = Depends(get_processor),
    settings: Settings = Depends(get_settings),
) -> Response:
    """Per-kind endpoint, so legacy object-store callbacks keep working after a provider switch."""
    try:
        provider_kind = ProviderKind(kind)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown provider") from None
    return await _handle(provider_kind, request, background_tasks, registry, processor, settings)
