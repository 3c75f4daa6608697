from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_in_seconds: int


class FixedWindowRateLimiter:
    """
    In-memory fixed-window limiter for the provider webhook.

    Per-process only; state for windows that have closed is pruned on the next hit.
    """

    def __init__(self, *, clock=time.time) -> None:
        self._lock = asyncio.Lock()
        self._clock = clock
        # key -> (window_start_epoch_sec, count)
        self._state: dict[str, tuple[int, int]] = {}

    async def hit(self, *, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        now = int(self._clock())
        window_start = now - (now % int(window_seconds))
        reset_in = (window_start + int(window_seconds)) - now

        async with self._lock:
            self._prune(window_start)
            start, count = self._state.get(key, (window_start, 0))
            if start != window_start:
                start, count = window_start, 0

            if count >= int(limit):
                return RateLimitResult(allowed=False, remaining=0, reset_in_seconds=int(reset_in))

            count += 1
            self._state[key] = (start, count)
            return RateLimitResult(
                allowed=True,
                remaining=max(0, int(limit) - count),
                reset_in_seconds=int(reset_in),
            )

    def _prune(self, current_window_start: int) -> None:
        stale = [k for k, (start, _) in self._state.items() if start != current_window_start]
        for k in stale:
            del self._state[k]
