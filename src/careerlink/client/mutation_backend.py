from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, Protocol

import httpx

from careerlink.client.moderation import REGIONS, ClientState
from careerlink.core.errors import CareerLinkError, DuplicateEntity, IllegalTransition, NotFound, Unauthorized
from careerlink.core.settings import Settings
from careerlink.core.state import TransitionResult


class MutationBackend(Protocol):
    """Description: Server side of optimistic actions.
    Layer: L5
    Input: one mutating request per action
    Output: server result (or an exception the coordinator rolls back on)
    """

    async def save_post(self, post_id: str) -> None: ...

    async def unsave_post(self, post_id: str) -> None: ...

    async def hide_post(self, post_id: str) -> None: ...

    async def block_user(self, user_id: str) -> TransitionResult: ...

    async def snooze_user(self, user_id: str, until: str) -> None: ...

    async def change_application_status(
        self, application_id: str, status: str, expected: Optional[str] = None
    ) -> TransitionResult: ...

    async def load_region(self, state: ClientState, region: str) -> None: ...


class StoreMutationBackend:
    """
    Description: In-process backend calling the engine and store from a worker thread.
    Layer: L5
    Input: store + ApplicationTrackerService + ConnectionService + acting user
    Output: committed rows
    """

    def __init__(self, *, store, tracker, connections, user_id: str) -> None:
        self.store = store
        self.tracker = tracker
        self.connections = connections
        self.user_id = user_id

    async def save_post(self, post_id: str) -> None:
        await asyncio.to_thread(self.store.save_post, user_id=self.user_id, post_id=post_id)

    async def unsave_post(self, post_id: str) -> None:
        await asyncio.to_thread(self.store.unsave_post, user_id=self.user_id, post_id=post_id)

    async def hide_post(self, post_id: str) -> None:
        await asyncio.to_thread(self.store.hide_post, user_id=self.user_id, post_id=post_id)

    async def block_user(self, user_id: str) -> TransitionResult:
        return await asyncio.to_thread(self.connections.block, actor_id=self.user_id, other_id=user_id)

    async def snooze_user(self, user_id: str, until: str) -> None:
        await asyncio.to_thread(self.store.snooze_user, user_id=self.user_id, snoozed_user_id=user_id, until=until)

    async def change_application_status(
        self, application_id: str, status: str, expected: Optional[str] = None
    ) -> TransitionResult:
        return await asyncio.to_thread(
            self.tracker.transition,
            application_id=application_id,
            requested_status=status,
            actor_id=self.user_id,
            expected_status=expected,
        )

    async def load_region(self, state: ClientState, region: str) -> None:
        await asyncio.to_thread(self._load_region_sync, state, region)

    def _load_region_sync(self, state: ClientState, region: str) -> None:
        if region == "saved":
            ids = self.store.saved_post_ids(self.user_id)
            state.saved_post_ids = set(ids)
            state.saved_count = len(ids)
        elif region == "hidden":
            state.hidden_post_ids = set(self.store.hidden_post_ids(self.user_id))
        elif region == "blocked":
            state.blocked_user_ids = set(self.store.blocked_user_ids(self.user_id))
        elif region == "snoozed":
            state.snoozed_until = self.store.snoozed_users(self.user_id)
        elif region == "applications":
            state.application_statuses = {
                app_id: self.store.get_application(app_id).status for app_id in state.application_statuses
            }
        else:
            raise KeyError(region)

    async def load_state(self, state: ClientState) -> ClientState:
        for region in REGIONS:
            await self.load_region(state, region)
        return state


_STATUS_ERRORS = {403: Unauthorized, 404: NotFound}


class HttpMutationBackend:
    """
    Description: Backend over the HTTP API; error bodies are mapped back to the error taxonomy.
    Layer: L5
    Input: base_url + actor id
    Output: server results
    """

    def __init__(
        self,
        *,
        base_url: str,
        actor_id: str,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.user_id = actor_id
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._headers = {"X-Actor-Id": actor_id}

    @classmethod
    def from_settings(cls, settings: Settings, *, actor_id: str) -> "HttpMutationBackend":
        if not settings.API_BASE_URL:
            raise ValueError("API_BASE_URL is not configured")
        return cls(base_url=settings.API_BASE_URL, actor_id=actor_id, timeout=settings.MAX_HTTP_SECONDS)

    async def _send(self, method: str, url: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        r = await self._client.request(method, url, json=json, headers=self._headers)
        if r.status_code >= 400:
            body = r.json() if r.headers.get("content-type", "").startswith("application/json") else {}
            reason = str(body.get("reason") or r.text[:200])
            code = body.get("error")
            if code == "illegal_transition":
                raise IllegalTransition(
                    current=str(body.get("current", "?")), requested=str(body.get("requested", "?"))
                )
            if code == "duplicate":
                raise DuplicateEntity(reason)
            raise _STATUS_ERRORS.get(r.status_code, CareerLinkError)(reason)
        return r.json() if r.content else {}

    async def save_post(self, post_id: str) -> None:
        await self._send("PUT", f"/posts/{post_id}/save")

    async def unsave_post(self, post_id: str) -> None:
        await self._send("DELETE", f"/posts/{post_id}/save")

    async def hide_post(self, post_id: str) -> None:
        await self._send("POST", f"/posts/{post_id}/hide")

    async def block_user(self, user_id: str) -> TransitionResult:
        return TransitionResult.model_validate(await self._send("POST", f"/users/{user_id}/block"))

    async def snooze_user(self, user_id: str, until: str) -> None:
        await self._send("POST", f"/users/{user_id}/snooze", json={"until": until})

    async def change_application_status(
        self, application_id: str, status: str, expected: Optional[str] = None
    ) -> TransitionResult:
        body: Dict[str, Any] = {"status": status}
        if expected is not None:
            body["expected_status"] = expected
        return TransitionResult.model_validate(
            await self._send("POST", f"/applications/{application_id}/status", json=body)
        )

    async def load_region(self, state: ClientState, region: str) -> None:
        if region == "applications":
            statuses = {}
            for app_id in state.application_statuses:
                statuses[app_id] = (await self._send("GET", f"/applications/{app_id}"))["status"]
            state.application_statuses = statuses
            return
        data = await self._send("GET", "/me/moderation")
        if region == "saved":
            state.saved_post_ids = set(data["saved_post_ids"])
            state.saved_count = len(state.saved_post_ids)
        elif region == "hidden":
            state.hidden_post_ids = set(data["hidden_post_ids"])
        elif region == "blocked":
            state.blocked_user_ids = set(data["blocked_user_ids"])
        elif region == "snoozed":
            state.snoozed_until = dict(data["snoozed_until"])
        else:
            raise KeyError(region)

    async def aclose(self) -> None:
        await self._client.aclose()
