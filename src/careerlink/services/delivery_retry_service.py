from __future__ import annotations

import asyncio
import logging
from typing import Dict

from careerlink.core.errors import NotificationDeliveryFailure
from careerlink.core.settings import Settings
from careerlink.services.notification_service import NotificationService

log = logging.getLogger("delivery")


class DeliveryRetryService:
    """
    Description: Replays outbox entries whose immediate delivery failed.
    Layer: L3
    Input: due notification_outbox rows
    Output: notification rows + fan-out via the store change feed; backoff on failure
    """

    def __init__(self, store, notifications: NotificationService, settings: Settings) -> None:
        self.store = store
        self.notifications = notifications
        self.s = settings
        self._stopping = asyncio.Event()

    def run_once(self) -> Dict[str, int]:
        """
        Description: Drain every due outbox entry once.
        Layer: L3
        Input: None
        Output: counts {delivered, duplicate, failed, parked}
        """
        stats = {"delivered": 0, "duplicate": 0, "failed": 0, "parked": 0}
        for entry in self.store.due_outbox():
            try:
                notification = self.notifications.deliver(entry)
            except NotificationDeliveryFailure as err:
                self.notifications.record_failure(entry, err)
                stats["failed"] += 1
                if entry.attempts + 1 >= self.s.DELIVERY_MAX_ATTEMPTS:
                    stats["parked"] += 1
                    log.error(
                        "Event %s -> %s parked after %d attempts: %s",
                        entry.event_key,
                        entry.recipient_id,
                        entry.attempts + 1,
                        err.reason,
                    )
                continue
            if notification is None:
                stats["duplicate"] += 1
            else:
                stats["delivered"] += 1
                log.info("Replayed event %s -> %s as %s", entry.event_key, entry.recipient_id, notification.id)
        return stats

    async def run_forever(self) -> None:
        """Poll the outbox until stop() is called."""
        log.info("Delivery retry worker started (poll=%.1fs)", self.s.DELIVERY_POLL_SECONDS)
        while not self._stopping.is_set():
            try:
                await asyncio.to_thread(self.run_once)
            except Exception:
                log.exception("Delivery retry pass failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.s.DELIVERY_POLL_SECONDS)
            except asyncio.TimeoutError:
                pass
        log.info("Delivery retry worker stopped")

    def stop(self) -> None:
        self._stopping.set()
