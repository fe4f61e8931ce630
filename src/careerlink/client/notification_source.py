from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from careerlink.core.settings import Settings
from careerlink.core.state import Notification, Watermark


class NotificationSource(Protocol):
    """Description: Where a client cache reads pages and writes read-state.
    Layer: L4
    Input: recipient_id + limit + watermark / ids
    Output: notification pages, rows changed
    """

    async def fetch_page(
        self, *, recipient_id: str, limit: int, before: Optional[Watermark] = None
    ) -> List[Notification]: ...

    async def mark_read(self, *, recipient_id: str, ids: Sequence[str]) -> int: ...


class StoreNotificationSource:
    """In-process source; store calls run in a worker thread."""

    def __init__(self, store) -> None:
        self.store = store

    async def fetch_page(
        self, *, recipient_id: str, limit: int, before: Optional[Watermark] = None
    ) -> List[Notification]:
        return await asyncio.to_thread(
            self.store.list_notifications, recipient_id=recipient_id, limit=limit, before=before
        )

    async def mark_read(self, *, recipient_id: str, ids: Sequence[str]) -> int:
        return await asyncio.to_thread(self.store.mark_notifications_read, recipient_id=recipient_id, ids=list(ids))


class HttpNotificationSource:
    """
    Description: Source backed by the HTTP API.
    Layer: L4
    Input: base_url + actor id (sent as X-Actor-Id)
    Output: pages parsed from the wire schema

    Requests larger than the server page cap are split into several calls that
    follow the server's has_more flag, so a short page always means end of history.
    """

    def __init__(
        self,
        *,
        base_url: str,
        actor_id: str,
        timeout: float = 15.0,
        max_page_size: int = 50,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._headers = {"X-Actor-Id": actor_id}
        self.max_page_size = max_page_size

    @classmethod
    def from_settings(cls, settings: Settings, *, actor_id: str) -> "HttpNotificationSource":
        if not settings.API_BASE_URL:
            raise ValueError("API_BASE_URL is not configured")
        return cls(
            base_url=settings.API_BASE_URL,
            actor_id=actor_id,
            timeout=settings.MAX_HTTP_SECONDS,
            max_page_size=settings.NOTIFICATION_HISTORY_LIMIT,
        )

    async def fetch_page(
        self, *, recipient_id: str, limit: int, before: Optional[Watermark] = None
    ) -> List[Notification]:
        items: List[Notification] = []
        while len(items) < limit:
            params: Dict[str, Any] = {"limit": min(limit - len(items), self.max_page_size)}
            if before is not None:
                params["before_created_at"] = before.created_at
                params["before_id"] = before.id
            r = await self._client.get("/notifications", params=params, headers=self._headers)
            r.raise_for_status()
            body = r.json()
            chunk = [Notification.model_validate(item) for item in body.get("items", [])]
            items.extend(chunk)
            if not chunk or not body.get("has_more"):
                break
            before = Watermark.of(chunk[-1])
        return items

    async def mark_read(self, *, recipient_id: str, ids: Sequence[str]) -> int:
        r = await self._client.post("/notifications/read", json={"ids": list(ids)}, headers=self._headers)
        r.raise_for_status()
        return int(r.json().get("updated", 0))

    async def aclose(self) -> None:
        await self._client.aclose()
