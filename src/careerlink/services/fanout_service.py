from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

log = logging.getLogger("fanout")

_CLOSED = object()


class NotificationStream:
    """
    Description: One session's independent, ordered view of a recipient's live events.
    Layer: L3
    Input: items offered by a dispatch loop
    Output: async iteration / get(timeout); ends when closed
    """

    def __init__(
        self,
        recipient_id: str,
        *,
        maxsize: int = 0,
        on_close: Optional[Callable[["NotificationStream"], None]] = None,
    ) -> None:
        self.recipient_id = recipient_id
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._on_close = on_close
        self.closed = False
        self.overflowed = False

    def _offer(self, item: Any) -> None:
        if self.closed:
            return
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            # Consumer fell behind; ending the stream forces a catch-up fetch on reconnect.
            log.warning("Stream for %s overflowed; closing for catch-up", self.recipient_id)
            self.overflowed = True
            self.close()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        while self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)
        if self._on_close is not None:
            self._on_close(self)

    async def get(self, timeout: Optional[float] = None) -> Optional[Any]:
        """Next item, or None when the stream is closed (or the timeout elapses)."""
        if self.closed and self._queue.empty():
            return None
        try:
            if timeout is None:
                item = await self._queue.get()
            else:
                item = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if item is _CLOSED:
            return None
        return item

    def __aiter__(self) -> "NotificationStream":
        return self

    async def __anext__(self) -> Any:
        item = await self.get()
        if item is None:
            raise StopAsyncIteration
        return item


class _RecipientGroup:
    """All open streams of one recipient plus the dispatch task that feeds them in order."""

    def __init__(self, recipient_id: str, loop: asyncio.AbstractEventLoop) -> None:
        self.recipient_id = recipient_id
        self.loop = loop
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.streams: List[NotificationStream] = []
        self.task = loop.create_task(self._dispatch())

    async def _dispatch(self) -> None:
        while True:
            item = await self.inbox.get()
            for stream in list(self.streams):
                stream._offer(item)


class FanoutChannel:
    """
    Description: Publish/subscribe channel delivering committed rows to every live session of a recipient.
    Layer: L3
    Input: publish(item) from the store change feed (any thread)
    Output: per-subscriber streams in publish order
    """

    def __init__(self, *, key: Callable[[Any], str] = lambda n: n.recipient_id, queue_size: int = 0) -> None:
        self._key = key
        self._queue_size = queue_size
        self._groups: Dict[str, _RecipientGroup] = {}
        self._lock = threading.Lock()

    def subscribe(self, recipient_id: str) -> NotificationStream:
        """Open an independent stream; must be called from within the event loop."""
        loop = asyncio.get_running_loop()
        with self._lock:
            group = self._groups.get(recipient_id)
            if group is None or group.loop is not loop or group.task.done():
                group = _RecipientGroup(recipient_id, loop)
                self._groups[recipient_id] = group
            stream = NotificationStream(recipient_id, maxsize=self._queue_size, on_close=self._discard)
            group.streams.append(stream)
        log.debug("Subscribed stream for %s (%d open)", recipient_id, len(group.streams))
        return stream

    def _discard(self, stream: NotificationStream) -> None:
        with self._lock:
            group = self._groups.get(stream.recipient_id)
            if group is None or stream not in group.streams:
                return
            group.streams.remove(stream)
            if not group.streams:
                del self._groups[stream.recipient_id]
                if not group.loop.is_closed():
                    group.loop.call_soon_threadsafe(group.task.cancel)

    def publish(self, item: Any) -> bool:
        """
        Description: Hand one committed item to the recipient's dispatch loop.
        Layer: L3
        Input: item (Notification or other keyed record)
        Output: True when at least one stream is subscribed
        """
        recipient_id = self._key(item)
        with self._lock:
            group = self._groups.get(recipient_id)
        if group is None:
            return False
        try:
            group.loop.call_soon_threadsafe(self._enqueue, recipient_id, item)
        except RuntimeError:
            log.warning("Event loop for %s is closed; dropping its streams", recipient_id)
            with self._lock:
                self._groups.pop(recipient_id, None)
            return False
        return True

    def _enqueue(self, recipient_id: str, item: Any) -> None:
        # Runs on the loop; the group is resolved again because it may have been
        # torn down and re-created since publish() looked it up.
        with self._lock:
            group = self._groups.get(recipient_id)
        if group is None:
            log.debug("No live streams for %s when dispatching; item dropped", recipient_id)
            return
        if group.loop is asyncio.get_running_loop():
            group.inbox.put_nowait(item)
        else:
            group.loop.call_soon_threadsafe(group.inbox.put_nowait, item)

    def subscriber_count(self, recipient_id: str) -> int:
        with self._lock:
            group = self._groups.get(recipient_id)
            return len(group.streams) if group else 0

    def close_all(self) -> None:
        with self._lock:
            streams = [s for g in self._groups.values() for s in g.streams]
        for stream in streams:
            stream.close()


class _SharedUpstream:
    def __init__(self, key: Tuple[str, str], upstream: NotificationStream) -> None:
        self.key = key
        self.upstream = upstream
        self.taps: List[NotificationStream] = []
        self.task: Optional[asyncio.Task] = None

    async def pump(self) -> None:
        async for item in self.upstream:
            for tap in list(self.taps):
                tap._offer(item)
        # Upstream ended (closed or overflowed): consumers must reconnect and catch up.
        for tap in list(self.taps):
            tap.close()


class SubscriptionManager:
    """
    Description: Shared subscriptions keyed by (entity_type, recipient_id) with reference counting.
    Layer: L3
    Input: acquire/release from UI components
    Output: taps sharing one underlying channel stream per key
    """

    def __init__(self) -> None:
        self._channels: Dict[str, FanoutChannel] = {}
        self._shared: Dict[Tuple[str, str], _SharedUpstream] = {}

    def register(self, entity_type: str, channel: FanoutChannel) -> None:
        self._channels[entity_type] = channel

    def channel(self, entity_type: str) -> FanoutChannel:
        return self._channels[entity_type]

    def acquire(self, entity_type: str, recipient_id: str) -> NotificationStream:
        key = (entity_type, recipient_id)
        shared = self._shared.get(key)
        if shared is None or shared.upstream.closed:
            upstream = self._channels[entity_type].subscribe(recipient_id)
            shared = _SharedUpstream(key, upstream)
            shared.task = asyncio.get_running_loop().create_task(shared.pump())
            self._shared[key] = shared
        tap = NotificationStream(recipient_id, on_close=lambda s, k=key: self._release(k, s))
        shared.taps.append(tap)
        return tap

    def release(self, tap: NotificationStream) -> None:
        tap.close()

    def _release(self, key: Tuple[str, str], tap: NotificationStream) -> None:
        shared = self._shared.get(key)
        if shared is None or tap not in shared.taps:
            return
        shared.taps.remove(tap)
        if not shared.taps:
            del self._shared[key]
            shared.upstream.close()
            if shared.task is not None:
                shared.task.cancel()

    def refcount(self, entity_type: str, recipient_id: str) -> int:
        shared = self._shared.get((entity_type, recipient_id))
        return len(shared.taps) if shared else 0
