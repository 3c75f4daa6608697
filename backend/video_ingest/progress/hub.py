from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from uuid import uuid4

from video_ingest.progress.events import StateChanged

logger = logging.getLogger(__name__)


ObserverPolicy = Callable[[str, str], Awaitable[bool]]


async def allow_authenticated(subject_id: str, lesson_id: str) -> bool:
    return bool(subject_id)


class Subscription:
    """
    One subscriber's view of a lesson.

    Events are queued in version order. When the queue is full the oldest
    non-terminal event is discarded; terminal events are always kept.
    """

    def __init__(self, hub: "ProgressHub", lesson_id: str, *, since_version: int | None, depth: int) -> None:
        self.id = uuid4().hex
        self.lesson_id = lesson_id
        self._hub = hub
        self._depth = int(depth)
        self._queue: deque[StateChanged] = deque()
        self._wakeup = asyncio.Event()
        self.last_version = -1 if since_version is None else int(since_version)
        self.dropped = 0
        self.closed = False

    def offer(self, change: StateChanged) -> bool:
        if self.closed or change.version <= self.last_version:
            return False
        if len(self._queue) >= self._depth:
            victim = next((c for c in self._queue if not c.terminal), None)
            if victim is not None:
                self._queue.remove(victim)
                self.dropped += 1
        self._queue.append(change)
        self.last_version = change.version
        self._wakeup.set()
        return True

    def pending(self) -> int:
        return len(self._queue)

    async def get(self, timeout: float | None = None) -> StateChanged | None:
        """Next event, or None when `timeout` elapses (or the subscription closes) first."""
        while not self._queue:
            if self.closed:
                return None
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                return None
        return self._queue.popleft()

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.clear()
        self._wakeup.set()
        await self._hub._release(self)


@dataclass
class _Bucket:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    subscribers: dict[str, Subscription] = field(default_factory=dict)


class ProgressHub:
    """Per-lesson fan-out of StateChanged events to connected subscribers."""

    def __init__(self, *, queue_depth: int = 64, can_observe: ObserverPolicy = allow_authenticated) -> None:
        self._depth = int(queue_depth)
        self.can_observe = can_observe
        self._buckets: dict[str, _Bucket] = {}

    def _bucket(self, lesson_id: str) -> _Bucket:
        bucket = self._buckets.get(lesson_id)
        if bucket is None:
            bucket = _Bucket()
            self._buckets[lesson_id] = bucket
        return bucket

    async def subscribe(
        self,
        lesson_id: str,
        *,
        since_version: int | None = None,
        load_snapshot: Callable[[], Awaitable[StateChanged | None]] | None = None,
    ) -> Subscription:
        """
        Register a subscriber, then queue a snapshot of the record when the
        subscriber is behind it. Registering first means no live event
        committed after the snapshot read can be missed.
        """
        sub = Subscription(self, lesson_id, since_version=since_version, depth=self._depth)
        while True:
            bucket = self._bucket(lesson_id)
            async with bucket.lock:
                # The bucket may have been released while we waited for its lock.
                if self._buckets.get(lesson_id) is not bucket:
                    continue
                bucket.subscribers[sub.id] = sub
                break

        if load_snapshot is not None:
            snapshot = await load_snapshot()
            if snapshot is not None:
                async with bucket.lock:
                    sub.offer(snapshot)
        logger.debug("Subscriber %s attached to lesson %s (since=%s)", sub.id, lesson_id, since_version)
        return sub

    async def publish(self, change: StateChanged) -> int:
        bucket = self._buckets.get(change.lesson_id)
        if bucket is None:
            return 0
        delivered = 0
        async with bucket.lock:
            for sub in list(bucket.subscribers.values()):
                if sub.offer(change):
                    delivered += 1
        return delivered

    async def _release(self, sub: Subscription) -> None:
        bucket = self._buckets.get(sub.lesson_id)
        if bucket is None:
            return
        async with bucket.lock:
            bucket.subscribers.pop(sub.id, None)
            if not bucket.subscribers and self._buckets.get(sub.lesson_id) is bucket:
                del self._buckets[sub.lesson_id]
        logger.debug("Subscriber %s released from lesson %s", sub.id, sub.lesson_id)

    def subscriber_count(self, lesson_id: str | None = None) -> int:
        if lesson_id is not None:
            bucket = self._buckets.get(lesson_id)
            return len(bucket.subscribers) if bucket else 0
        return sum(len(b.subscribers) for b in self._buckets.values())

    async def close(self) -> None:
        for bucket in list(self._buckets.values()):
            for sub in list(bucket.subscribers.values()):
                await sub.close()
