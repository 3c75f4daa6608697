from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from video_ingest.core.errors import ErrorKind, ProviderError
from video_ingest.providers.base import VideoProvider

logger = logging.getLogger(__name__)


async def delete_with_retries(
    provider: VideoProvider,
    asset_id: str,
    *,
    attempts: int = 3,
    base_delay_seconds: float = 1.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> bool:
    """
    Delete a provider asset, retrying transient failures with exponential backoff.

    An asset the provider no longer knows counts as deleted. Returns False only
    when every attempt failed or the provider refused outright.
    """
    for attempt in range(1, int(attempts) + 1):
        try:
            existed = await provider.delete_asset(asset_id)
        except ProviderError as e:
            if e.kind is ErrorKind.NOT_FOUND:
                return True
            if not e.retryable:
                logger.error("Deleting %s asset %s failed permanently: %s", provider.name, asset_id, e.message)
                return False
            if attempt == attempts:
                logger.error(
                    "Deleting %s asset %s failed after %d attempts: %s", provider.name, asset_id, attempts, e.message
                )
                return False
            delay = base_delay_seconds * (2 ** (attempt - 1))
            logger.warning(
                "Deleting %s asset %s failed (attempt %d/%d), retrying in %.1fs: %s",
                provider.name,
                asset_id,
                attempt,
                attempts,
                delay,
                e.message,
            )
            await sleep(delay)
            continue
        if not existed:
            logger.info("%s asset %s was already gone", provider.name, asset_id)
        return True
    return False
