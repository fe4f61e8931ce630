from __future__ import annotations

import asyncio
import logging
from typing import Iterable, List, Optional, Sequence, Set

from careerlink.client.notification_source import NotificationSource
from careerlink.core.errors import MarkReadFailed, StalePageFetch
from careerlink.core.state import Notification, Watermark

log = logging.getLogger("cache")


class NotificationCache:
    """
    Description: Per-session paginated working set of notifications with an unread counter.
    Layer: L4
    Input: first-page fetch, next-page fetches, live pushes, mark-read actions
    Output: duplicate-free list ordered by (created_at desc, id desc) + unread count

    Every change to the list or counter goes through _commit; the counter always equals the
    number of cached items with is_read == False.
    """

    def __init__(self, recipient_id: str, source: NotificationSource, *, page_size: int = 10) -> None:
        self.recipient_id = recipient_id
        self.source = source
        self.page_size = page_size

        self._items: List[Notification] = []
        self._ids: Set[str] = set()
        self._unread = 0
        self._has_more = True
        self._loaded = False
        self._refreshing = False
        self._buffer: List[Notification] = []
        self._generation = 0
        self._append_lock = asyncio.Lock()

    # --------------------
    # Public surface
    # --------------------
    @property
    def items(self) -> List[Notification]:
        return list(self._items)

    @property
    def unread_count(self) -> int:
        return self._unread

    @property
    def has_more(self) -> bool:
        return self._has_more

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def buffered(self) -> List[Notification]:
        return list(self._buffer)

    # --------------------
    # Single writer
    # --------------------
    def _commit(self, items: Iterable[Notification]) -> None:
        merged = {}
        for n in items:
            merged.setdefault(n.id, n)
        ordered = sorted(merged.values(), key=Notification.sort_key, reverse=True)
        self._items = ordered
        self._ids = {n.id for n in ordered}
        self._unread = sum(1 for n in ordered if not n.is_read)

    def _below_window(self, n: Notification) -> bool:
        # Older than the loaded window while more pages exist: the next page will bring it.
        return self._has_more and bool(self._items) and n.sort_key() < self._items[-1].sort_key()

    # --------------------
    # Loading
    # --------------------
    async def load_first_page(self, page_size: Optional[int] = None) -> List[Notification]:
        """
        Description: Replace the cache with the newest page; buffered pushes merge on top.
        Layer: L4
        Input: page_size
        Output: current list (unchanged when a newer refresh superseded this one)
        """
        size = page_size or self.page_size
        self._generation += 1
        gen = self._generation
        self._refreshing = True
        try:
            page = await self.source.fetch_page(recipient_id=self.recipient_id, limit=size, before=None)
            if gen != self._generation:
                raise StalePageFetch(f"first page superseded (generation {gen} < {self._generation})")
        except StalePageFetch as stale:
            log.debug("Discarding stale page for %s: %s", self.recipient_id, stale.reason)
            return self.items
        except BaseException:
            if gen == self._generation:
                self._refreshing = False
                if self._loaded:
                    self._drain_buffer()
            raise

        self._has_more = len(page) == size
        self._loaded = True
        self._refreshing = False
        buffered, self._buffer = self._buffer, []
        self._commit(list(page))
        for n in buffered:
            if n.id not in self._ids and not self._below_window(n):
                self._commit([n, *self._items])
        return self.items

    async def load_next_page(self, page_size: Optional[int] = None) -> List[Notification]:
        """
        Description: Append notifications strictly older than the loaded watermark.
        Layer: L4
        Input: page_size
        Output: newly appended items ([] when nothing more or the result went stale)
        """
        if not self._loaded:
            await self.load_first_page(page_size)
            return self.items
        size = page_size or self.page_size
        async with self._append_lock:
            if not self._has_more:
                return []
            gen = self._generation
            watermark = Watermark.of(self._items[-1]) if self._items else None
            page = await self.source.fetch_page(recipient_id=self.recipient_id, limit=size, before=watermark)
            current = Watermark.of(self._items[-1]) if self._items else None
            if gen != self._generation or current != watermark:
                log.debug("Discarding stale next page for %s (watermark %s)", self.recipient_id, watermark)
                return []
            added = [n for n in page if n.id not in self._ids]
            self._commit([*self._items, *added])
            self._has_more = len(page) == size
            return added

    # --------------------
    # Live pushes
    # --------------------
    def apply_push(self, notification: Notification) -> bool:
        """
        Description: Merge one live notification at the head.
        Layer: L4
        Input: Notification from the fan-out stream
        Output: True when the list changed (False for duplicates, buffering, foreign recipients)
        """
        if notification.recipient_id != self.recipient_id:
            log.warning("Push for %s delivered to cache of %s; ignored", notification.recipient_id, self.recipient_id)
            return False
        if not self._loaded or self._refreshing:
            if all(b.id != notification.id for b in self._buffer):
                self._buffer.append(notification)
            return False
        if notification.id in self._ids or self._below_window(notification):
            return False
        self._commit([notification, *self._items])
        return True

    def _drain_buffer(self) -> None:
        buffered, self._buffer = self._buffer, []
        for n in buffered:
            self.apply_push(n)

    # --------------------
    # Read state
    # --------------------
    async def mark_all_read(self) -> int:
        """
        Description: Optimistically mark every cached item read, then persist.
        Layer: L4
        Input: None
        Output: number of items flipped (MarkReadFailed after rollback on error)
        """
        return await self._mark(ids=None)

    async def mark_read(self, ids: Sequence[str]) -> int:
        return await self._mark(ids=set(ids))

    async def _mark(self, *, ids: Optional[Set[str]]) -> int:
        flipped = {n.id for n in self._items if not n.is_read and (ids is None or n.id in ids)}
        if not flipped:
            return 0
        self._set_read(flipped, True)
        try:
            await self.source.mark_read(recipient_id=self.recipient_id, ids=sorted(flipped))
        except asyncio.CancelledError:
            self._set_read(flipped, False)
            raise
        except Exception as e:
            self._set_read(flipped, False)
            log.warning("Mark-read failed for %s; restored %d unread items: %s", self.recipient_id, len(flipped), e)
            raise MarkReadFailed("Could not mark notifications as read. Please try again.") from e
        return len(flipped)

    def _set_read(self, ids: Set[str], value: bool) -> None:
        self._commit(n.model_copy(update={"is_read": value}) if n.id in ids else n for n in self._items)
