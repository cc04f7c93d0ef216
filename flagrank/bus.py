"""
In-process change feeds.

Components publish a notification on a topic after they change something;
readers hold a ``Subscription`` for as long as they need the feed. A
subscription is an async context manager: leaving the block, normally or by
exception, unsubscribes it.

    async with bus.subscribe("teams", "events") as feed:
        async for notification in feed:
            ...
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional, Set, Tuple

from .models import now_ms

logger = logging.getLogger(__name__)

TOPICS = ("teams", "levels", "events", "leaderboard", "announcements")

_CLOSED = object()


@dataclass(frozen=True)
class Notification:
    topic: str
    payload: Dict[str, Any] = field(default_factory=dict)
    published_at: int = field(default_factory=now_ms)


class Subscription:
    """Bounded queue of notifications for a set of topics."""

    def __init__(
        self,
        bus: "EventBus",
        topics: FrozenSet[str],
        queue_size: int,
    ) -> None:
        self._bus = bus
        self.topics = topics
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.closed = False
        self.dropped = 0

    def _offer(self, item: Any) -> None:
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            # Slow reader: keep the newest notifications
            self._queue.get_nowait()
            self.dropped += 1
            self._queue.put_nowait(item)

    def deliver(self, notification: Notification) -> bool:
        if self.closed or notification.topic not in self.topics:
            return False
        self._offer(notification)
        return True

    def pending(self) -> int:
        return self._queue.qsize()

    def drain(self) -> int:
        """Discard queued notifications; returns how many were discarded."""
        discarded = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return discarded
            if item is _CLOSED:
                self._queue.put_nowait(item)
                return discarded
            discarded += 1

    async def get(self, timeout: Optional[float] = None) -> Optional[Notification]:
        """
        Wait for the next notification.

        Returns None once the subscription is closed; raises
        asyncio.TimeoutError when nothing arrives within ``timeout``.
        """
        if self.closed and self._queue.empty():
            return None
        item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            self._queue.put_nowait(item)
            return None
        return item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._bus._unsubscribe(self)
        self._offer(_CLOSED)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Notification:
        item = await self.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False


class EventBus:
    """Topic-based publish/subscribe with non-blocking publishers."""

    def __init__(self, queue_size: int = 256) -> None:
        self.queue_size = queue_size
        self._subscriptions: Set[Subscription] = set()

    def subscribe(self, *topics: str) -> Subscription:
        """
        Register a subscription; with no topics it receives every topic.

        @param topics: Topic names from TOPICS
        @return: Subscription to be used as an async context manager
        """
        unknown = set(topics) - set(TOPICS)
        if unknown:
            raise ValueError(f"unknown topics: {sorted(unknown)}")

        subscription = Subscription(self, frozenset(topics or TOPICS), self.queue_size)
        self._subscriptions.add(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions.discard(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(
        self,
        topic: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Fan a notification out to every subscription on ``topic``.

        @return: Number of subscriptions that received it
        """
        if topic not in TOPICS:
            raise ValueError(f"unknown topic: {topic}")

        notification = Notification(topic=topic, payload=payload or {})
        delivered = 0
        for subscription in list(self._subscriptions):
            if subscription.deliver(notification):
                delivered += 1
        return delivered

    def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.close()


class LiveView:
    """
    A view recomputed from scratch whenever one of its topics fires.

    Bursts are coalesced: notifications queued while a refresh runs lead to a
    single follow-up refresh. ``refresh`` must be side-effect free apart from
    replacing the view's own state.
    """

    topics: Tuple[str, ...] = ()

    def __init__(self, bus: EventBus) -> None:
        self.bus = bus
        self.version = 0
        self._task: Optional[asyncio.Task] = None
        self._subscription: Optional[Subscription] = None
        self._changed = asyncio.Condition()

    async def refresh(self) -> None:
        raise NotImplementedError

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _refresh_safely(self) -> None:
        try:
            await self.refresh()
        except Exception:
            logger.exception("%s refresh failed", type(self).__name__)
            return

        async with self._changed:
            self.version += 1
            self._changed.notify_all()

    async def _follow(self, subscription: Subscription) -> None:
        async with subscription:
            async for _ in subscription:
                subscription.drain()
                await self._refresh_safely()

    async def start(self) -> None:
        if self.running:
            return

        # Subscribe before the first refresh so no change slips between them
        subscription = self.bus.subscribe(*self.topics)
        try:
            await self._refresh_safely()
            self._task = asyncio.create_task(self._follow(subscription))
        except BaseException:
            subscription.close()
            raise
        self._subscription = subscription

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    async def wait_for_version(
        self,
        version: int,
        timeout: Optional[float] = None,
    ) -> None:
        async with self._changed:
            await asyncio.wait_for(
                self._changed.wait_for(lambda: self.version >= version), timeout
            )

    async def __aenter__(self) -> "LiveView":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self.stop()
        return False
