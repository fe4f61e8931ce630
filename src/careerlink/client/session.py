from __future__ import annotations

import asyncio
import logging
from typing import Optional

from careerlink.client.notification_cache import NotificationCache
from careerlink.services.fanout_service import NotificationStream, SubscriptionManager

log = logging.getLogger("cache")


class NotificationSession:
    """
    Description: Connected session wiring a live stream into a notification cache.
    Layer: L4
    Input: SubscriptionManager + NotificationCache
    Output: cache kept current from pushes; catch-up load on every (re)connect
    """

    def __init__(
        self,
        cache: NotificationCache,
        subscriptions: SubscriptionManager,
        *,
        entity_type: str = "notifications",
        auto_reconnect: bool = True,
    ) -> None:
        self.cache = cache
        self.subscriptions = subscriptions
        self.entity_type = entity_type
        self.auto_reconnect = auto_reconnect
        self.reconnects = 0
        self._stream: Optional[NotificationStream] = None
        self._pump: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._stream is not None and not self._stream.closed

    async def start(self) -> None:
        """Subscribe first, then load, so nothing published in between is missed."""
        self._open_stream()
        await self.cache.load_first_page()

    def _open_stream(self) -> None:
        self._stream = self.subscriptions.acquire(self.entity_type, self.cache.recipient_id)
        self._pump = asyncio.get_running_loop().create_task(self._run(self._stream))

    async def _run(self, stream: NotificationStream) -> None:
        async for notification in stream:
            self.cache.apply_push(notification)
        if self._closed or stream is not self._stream:
            return
        log.warning("Stream for %s dropped", self.cache.recipient_id)
        if self.auto_reconnect:
            await self.reconnect()

    async def reconnect(self) -> None:
        """
        Description: Replace the stream and reconcile with a catch-up first-page load.
        Layer: L4
        Input: None
        Output: fresh stream + cache merged with anything missed during the gap
        """
        old_stream, old_pump = self._stream, self._pump
        self._stream = None
        if old_stream is not None:
            self.subscriptions.release(old_stream)
        if old_pump is not None and old_pump is not asyncio.current_task():
            old_pump.cancel()
        self.reconnects += 1
        self._open_stream()
        await self.cache.load_first_page()

    async def close(self) -> None:
        self._closed = True
        if self._stream is not None:
            self.subscriptions.release(self._stream)
        if self._pump is not None and self._pump is not asyncio.current_task():
            self._pump.cancel()
            try:
                await self._pump
            except asyncio.CancelledError:
                pass
        self._stream = None
        self._pump = None
