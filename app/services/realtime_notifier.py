# services/realtime_notifier.py
"""
Realtime Notifier

In-memory, per-project fan-out of processing events:

    processing-added      an item entered queued/processing
    processing-completed  an item reached a terminal status (or expired)

Each project has its own channel guarded by its own RLock, so delivery for
one project never waits on another. Callbacks run under the channel lock in
registration order, which keeps every subscriber's view of a project ordered.

Nothing here is durable. A channel is created lazily, seeded from the
Processing Status Store through the injected `rebuild` function, and dropped
once it has no subscribers and no in-flight items.
"""

import asyncio
import threading
import time
from collections import OrderedDict
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

from core.config import settings
from core.exceptions import StreamLimitReached
from core.logger import logger

PROCESSING_ADDED = "processing-added"
PROCESSING_COMPLETED = "processing-completed"
EXPIRED_OUTCOME = "expired"

Event = Dict[str, Any]
Callback = Callable[[Event], None]
RebuildFn = Callable[[str], List[Dict[str, Any]]]

# ids completed recently; a late `track` for one of them is ignored
FINISHED_MEMORY = 4096


class Subscription:
    """Cancellation handle returned by RealtimeNotifier.subscribe."""

    def __init__(self, notifier: "RealtimeNotifier", project_id: str, callback: Callback,
                 items: List[Dict[str, Any]]):
        self._notifier = notifier
        self.project_id = project_id
        self.callback = callback
        # in-flight items at the moment of subscribing
        self.initial_items = items
        self.active = True

    def cancel(self) -> None:
        self._notifier.unsubscribe(self.project_id, self.callback)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.cancel()
        return False


class _Channel:
    def __init__(self, project_id: str):
        self.project_id = project_id
        self.lock = threading.RLock()
        self.subscribers: "OrderedDict[Callback, Subscription]" = OrderedDict()
        self.items: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self.seeded = False
        self.closed = False

    def is_idle(self) -> bool:
        return not self.subscribers and not self.items


class RealtimeNotifier:
    def __init__(
        self,
        rebuild: Optional[RebuildFn] = None,
        clock: Callable[[], float] = time.time,
        max_item_age_secs: Optional[float] = None,
        max_streams: Optional[int] = None,
    ):
        self._rebuild = rebuild
        self._clock = clock
        self.max_item_age_secs = max_item_age_secs or settings.PROCESSING_ITEM_MAX_AGE_SECS
        self.max_streams = max_streams or settings.MAX_SSE_CONNECTIONS

        # the registry lock never blocks on a channel lock
        self._registry_lock = threading.Lock()
        self._channels: Dict[str, _Channel] = {}
        self._finished_lock = threading.Lock()
        self._finished: "OrderedDict[str, None]" = OrderedDict()
        self._streams_lock = threading.Lock()
        self._open_streams = 0

    # ========================================================================
    # CHANNEL REGISTRY
    # ========================================================================

    def _get_channel(self, project_id: str, create: bool) -> Optional[_Channel]:
        with self._registry_lock:
            channel = self._channels.get(project_id)
            if channel is None and create:
                channel = _Channel(project_id)
                self._channels[project_id] = channel
            return channel

    @contextmanager
    def _locked(self, project_id: str, create: bool) -> Iterator[Optional[_Channel]]:
        """Hold the live channel's lock; yields None when there is no channel."""
        while True:
            channel = self._get_channel(project_id, create)
            if channel is None:
                yield None
                return
            with channel.lock:
                # dropped between lookup and locking
                if channel.closed:
                    continue
                yield channel
                return

    def _drop_if_idle(self, channel: _Channel) -> None:
        with self._registry_lock:
            if not channel.lock.acquire(blocking=False):
                # busy; the holder re-checks idleness once it lets go
                return
            try:
                if channel.closed or not channel.is_idle():
                    return
                channel.closed = True
                if self._channels.get(channel.project_id) is channel:
                    del self._channels[channel.project_id]
            finally:
                channel.lock.release()
        logger.debug(f"Realtime channel for project {channel.project_id} dropped")

    def _seed(self, channel: _Channel) -> None:
        if channel.seeded:
            return
        if self._rebuild is not None:
            try:
                rebuilt = self._rebuild(channel.project_id)
            except Exception:
                # live events still flow; the next subscriber retries the rebuild
                logger.exception(f"Rebuilding in-flight items for project {channel.project_id} failed")
                return
            for item in rebuilt:
                if item["id"] not in channel.items and not self._is_finished(item["id"]):
                    channel.items[item["id"]] = self._normalize_item(item)
        channel.seeded = True

    def _remember_finished(self, media_id: str) -> None:
        with self._finished_lock:
            self._finished[media_id] = None
            self._finished.move_to_end(media_id)
            while len(self._finished) > FINISHED_MEMORY:
                self._finished.popitem(last=False)

    def _is_finished(self, media_id: str) -> bool:
        with self._finished_lock:
            return media_id in self._finished

    def channel_count(self) -> int:
        with self._registry_lock:
            return len(self._channels)

    # ========================================================================
    # SUBSCRIPTIONS
    # ========================================================================

    def subscribe(self, project_id: str, callback: Callback) -> Subscription:
        """Register `callback` for a project; subscribing it again returns the same handle."""
        with self._locked(project_id, create=True) as channel:
            existing = channel.subscribers.get(callback)
            if existing is not None:
                return existing
            self._seed(channel)
            subscription = Subscription(self, project_id, callback, self._items(channel))
            channel.subscribers[callback] = subscription
            logger.info(f"Subscriber added for project {project_id} (total: {len(channel.subscribers)})")
            return subscription

    def unsubscribe(self, project_id: str, callback: Callback) -> None:
        with self._locked(project_id, create=False) as channel:
            if channel is None:
                return
            removed = channel.subscribers.pop(callback, None)
            if removed is None:
                return
            removed.active = False
            logger.info(f"Subscriber removed for project {project_id} (remaining: {len(channel.subscribers)})")
            idle = channel.is_idle()
        if idle:
            self._drop_if_idle(channel)

    def subscriber_count(self, project_id: str) -> int:
        with self._locked(project_id, create=False) as channel:
            if channel is None:
                return 0
            count = len(channel.subscribers)
            idle = channel.is_idle()
        if idle:
            self._drop_if_idle(channel)
        return count

    # ========================================================================
    # EVENTS
    # ========================================================================

    def _normalize_item(self, item: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": item["id"],
            "kind": item.get("kind") or "image",
            "name": item.get("name") or "",
            "status": item.get("status") or "Processing...",
            "source": item.get("source") or "unknown",
            "startedAt": item.get("startedAt") or self._clock(),
        }

    @staticmethod
    def _items(channel: _Channel) -> List[Dict[str, Any]]:
        return [dict(item) for item in channel.items.values()]

    def _emit(self, channel: _Channel, event_type: str, item: Dict[str, Any], **extra) -> None:
        event = {
            "type": event_type,
            "projectId": channel.project_id,
            "item": dict(item),
            "processingItems": self._items(channel),
            "timestamp": int(self._clock() * 1000),
        }
        event.update(extra)
        for subscription in list(channel.subscribers.values()):
            try:
                subscription.callback(event)
            except Exception:
                logger.exception(f"Realtime subscriber for project {channel.project_id} raised; skipped")

    def track(self, project_id: str, item: Dict[str, Any]) -> bool:
        """
        Add or update an in-flight item. Returns True when the item was new
        and `processing-added` was emitted.
        """
        if self._is_finished(item["id"]):
            return False
        with self._locked(project_id, create=True) as channel:
            current = channel.items.get(item["id"])
            if current is not None:
                current["status"] = item.get("status") or current["status"]
                return False
            tracked = self._normalize_item(item)
            channel.items[tracked["id"]] = tracked
            logger.info(f"Processing item added: {tracked['name']} (total: {len(channel.items)})")
            self._emit(channel, PROCESSING_ADDED, tracked)
            return True

    def complete(self, project_id: str, media_id: str, outcome: str = "completed") -> bool:
        """Drop an item and emit `processing-completed`. False when it was not tracked."""
        self._remember_finished(media_id)
        with self._locked(project_id, create=False) as channel:
            if channel is None:
                return False
            finished = channel.items.pop(media_id, None)
            if finished is not None:
                logger.info(f"Processing completed: {finished['name']} (remaining: {len(channel.items)})")
                self._emit(channel, PROCESSING_COMPLETED, finished, outcome=outcome)
            idle = channel.is_idle()
        if idle:
            self._drop_if_idle(channel)
        return finished is not None

    def snapshot(self, project_id: str) -> List[Dict[str, Any]]:
        with self._locked(project_id, create=False) as channel:
            if channel is None:
                return []
            items = self._items(channel)
            idle = channel.is_idle()
        if idle:
            self._drop_if_idle(channel)
        return items

    def cleanup(self, project_id: Optional[str] = None, max_age_secs: Optional[float] = None) -> int:
        """Expire items older than `max_age_secs`; every project when `project_id` is None."""
        max_age = self.max_item_age_secs if max_age_secs is None else max_age_secs
        if project_id is None:
            with self._registry_lock:
                project_ids = list(self._channels)
        else:
            project_ids = [project_id]

        removed = 0
        for pid in project_ids:
            with self._locked(pid, create=False) as channel:
                if channel is None:
                    continue
                now = self._clock()
                stale = [item for item in channel.items.values() if now - item["startedAt"] >= max_age]
                for item in stale:
                    del channel.items[item["id"]]
                    self._emit(channel, PROCESSING_COMPLETED, item, outcome=EXPIRED_OUTCOME)
                if stale:
                    logger.info(f"Cleaned up {len(stale)} old processing items for project {pid}")
                removed += len(stale)
                idle = channel.is_idle()
            if idle:
                self._drop_if_idle(channel)
        return removed

    # ========================================================================
    # SSE BRIDGE
    # ========================================================================

    def open_stream(self, project_id: str, loop: asyncio.AbstractEventLoop,
                    keepalive_secs: Optional[float] = None) -> "EventStream":
        with self._streams_lock:
            if self._open_streams >= self.max_streams:
                raise StreamLimitReached(f"Too many open event streams ({self.max_streams})")
            self._open_streams += 1
        try:
            return EventStream(self, project_id, loop, keepalive_secs or settings.SSE_KEEPALIVE_SECS)
        except Exception:
            self._release_stream()
            raise

    def open_stream_count(self) -> int:
        with self._streams_lock:
            return self._open_streams

    def _release_stream(self) -> None:
        with self._streams_lock:
            self._open_streams = max(0, self._open_streams - 1)


class EventStream:
    """Moves notifier callbacks from worker threads onto an asyncio queue."""

    def __init__(self, notifier: RealtimeNotifier, project_id: str,
                 loop: asyncio.AbstractEventLoop, keepalive_secs: float):
        self._notifier = notifier
        self._loop = loop
        self._queue: "asyncio.Queue[Event]" = asyncio.Queue()
        self.keepalive_secs = keepalive_secs
        self.closed = False
        self.subscription = notifier.subscribe(project_id, self._push)

    def _push(self, event: Event) -> None:
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    async def events(self):
        """Yields the snapshot first, then events; None marks a keep-alive tick."""
        try:
            yield {
                "type": "snapshot",
                "projectId": self.subscription.project_id,
                "processingItems": self.subscription.initial_items,
            }
            while True:
                try:
                    event = await asyncio.wait_for(self._queue.get(), timeout=self.keepalive_secs)
                except asyncio.TimeoutError:
                    yield None
                    continue
                yield event
        finally:
            self.close()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.subscription.cancel()
        self._notifier._release_stream()
