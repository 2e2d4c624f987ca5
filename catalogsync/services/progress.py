"""Observable stream of sync progress updates."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from ..models import SyncProgress

logger = logging.getLogger(__name__)

_CLOSED = object()


class ProgressSubscription:
    """Async iterator over updates published after it was created."""

    def __init__(self, feed: "ProgressFeed"):
        self._feed = feed
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False

    def _push(self, update: SyncProgress) -> None:
        if not self._closed:
            self._queue.put_nowait(update)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._feed._unsubscribe(self)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[SyncProgress]:
        return self

    async def __anext__(self) -> SyncProgress:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item  # type: ignore[return-value]

    async def __aenter__(self) -> "ProgressSubscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


class ProgressFeed:
    """Publishes :class:`SyncProgress` updates to any number of subscribers.

    Only the latest value is retained; a new subscriber sees updates
    published after it subscribed.
    """

    def __init__(self) -> None:
        self._latest = SyncProgress()
        self._subscribers: set[ProgressSubscription] = set()

    @property
    def latest(self) -> SyncProgress:
        return self._latest

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, update: SyncProgress) -> None:
        self._latest = update
        logger.debug(
            "Sync progress for %s: %s %.0f%%",
            update.profile_id,
            update.operation or update.state.value,
            update.progress * 100,
        )
        for subscriber in list(self._subscribers):
            subscriber._push(update)

    def subscribe(self) -> ProgressSubscription:
        subscription = ProgressSubscription(self)
        self._subscribers.add(subscription)
        return subscription

    def close(self) -> None:
        for subscriber in list(self._subscribers):
            subscriber.close()

    def _unsubscribe(self, subscription: ProgressSubscription) -> None:
        self._subscribers.discard(subscription)
