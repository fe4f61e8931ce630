from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional

from careerlink.client.moderation import REGIONS, ClientState
from careerlink.client.mutation_backend import MutationBackend
from careerlink.core.errors import CareerLinkError, MutationFailed, MutationRollbackFailure
from careerlink.core.state import TransitionResult, _iso_utc, _utc_now

log = logging.getLogger("coordinator")

Refresher = Callable[[ClientState, str], Awaitable[None]]


@dataclass
class MutationResult:
    ok: bool
    action: str
    value: Any = None
    error: Optional[CareerLinkError] = None
    refreshed: bool = False


class OptimisticAction(ABC):
    """
    Description: One user action with an optimistic delta and its inverse.
    Layer: L5
    Input: ClientState (apply/revert) + MutationBackend (commit)
    Output: server result reconciled into state
    """

    name = "action"
    label = "complete the action"
    region = ""

    @abstractmethod
    def apply(self, state: ClientState) -> None:
        ...

    @abstractmethod
    def revert(self, state: ClientState) -> None:
        ...

    @abstractmethod
    async def commit(self, backend: MutationBackend) -> Any:
        ...

    def reconcile(self, state: ClientState, result: Any) -> None:
        return None


class SavePost(OptimisticAction):
    name = "save"
    label = "save the post"
    region = "saved"

    def __init__(self, post_id: str) -> None:
        self.post_id = post_id
        self._added = False

    def apply(self, state: ClientState) -> None:
        self._added = self.post_id not in state.saved_post_ids
        if self._added:
            state.saved_post_ids.add(self.post_id)
            state.saved_count += 1

    def revert(self, state: ClientState) -> None:
        if self._added:
            state.saved_post_ids.discard(self.post_id)
            state.saved_count -= 1

    async def commit(self, backend: MutationBackend) -> Any:
        return await backend.save_post(self.post_id)


class UnsavePost(OptimisticAction):
    name = "unsave"
    label = "remove the saved post"
    region = "saved"

    def __init__(self, post_id: str) -> None:
        self.post_id = post_id
        self._removed = False

    def apply(self, state: ClientState) -> None:
        self._removed = self.post_id in state.saved_post_ids
        if self._removed:
            state.saved_post_ids.discard(self.post_id)
            state.saved_count -= 1

    def revert(self, state: ClientState) -> None:
        if self._removed:
            state.saved_post_ids.add(self.post_id)
            state.saved_count += 1

    async def commit(self, backend: MutationBackend) -> Any:
        return await backend.unsave_post(self.post_id)


class HidePost(OptimisticAction):
    name = "hide"
    label = "hide the post"
    region = "hidden"

    def __init__(self, post_id: str) -> None:
        self.post_id = post_id
        self._added = False

    def apply(self, state: ClientState) -> None:
        self._added = self.post_id not in state.hidden_post_ids
        state.hidden_post_ids.add(self.post_id)

    def revert(self, state: ClientState) -> None:
        if self._added:
            state.hidden_post_ids.discard(self.post_id)

    async def commit(self, backend: MutationBackend) -> Any:
        return await backend.hide_post(self.post_id)


class BlockUser(OptimisticAction):
    """Blocking removes every loaded post of the author from the visible feed at once."""

    name = "block"
    label = "block the user"
    region = "blocked"

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        self._added = False

    def apply(self, state: ClientState) -> None:
        self._added = self.user_id not in state.blocked_user_ids
        state.blocked_user_ids.add(self.user_id)

    def revert(self, state: ClientState) -> None:
        if self._added:
            state.blocked_user_ids.discard(self.user_id)

    async def commit(self, backend: MutationBackend) -> Any:
        return await backend.block_user(self.user_id)


class SnoozeUser(OptimisticAction):
    name = "snooze"
    label = "snooze the user"
    region = "snoozed"

    def __init__(self, user_id: str, *, days: int = 30) -> None:
        self.user_id = user_id
        self.until = _iso_utc(_utc_now() + timedelta(days=days))
        self._previous: Optional[str] = None

    def apply(self, state: ClientState) -> None:
        self._previous = state.snoozed_until.get(self.user_id)
        state.snoozed_until[self.user_id] = self.until

    def revert(self, state: ClientState) -> None:
        if self._previous is None:
            state.snoozed_until.pop(self.user_id, None)
        else:
            state.snoozed_until[self.user_id] = self._previous

    async def commit(self, backend: MutationBackend) -> Any:
        return await backend.snooze_user(self.user_id, self.until)


class ChangeApplicationStatus(OptimisticAction):
    name = "change_status"
    label = "update the application status"
    region = "applications"

    def __init__(self, application_id: str, status: str) -> None:
        self.application_id = application_id
        self.status = status
        self._previous: Optional[str] = None
        self._had_entry = False

    def apply(self, state: ClientState) -> None:
        self._had_entry = self.application_id in state.application_statuses
        self._previous = state.application_statuses.get(self.application_id)
        state.application_statuses[self.application_id] = self.status

    def revert(self, state: ClientState) -> None:
        if self._had_entry:
            state.application_statuses[self.application_id] = self._previous  # type: ignore[assignment]
        else:
            state.application_statuses.pop(self.application_id, None)

    async def commit(self, backend: MutationBackend) -> TransitionResult:
        return await backend.change_application_status(self.application_id, self.status, expected=self._previous)

    def reconcile(self, state: ClientState, result: Any) -> None:
        if isinstance(result, TransitionResult):
            state.application_statuses[self.application_id] = result.status


class WithdrawApplication(ChangeApplicationStatus):
    name = "withdraw"
    label = "withdraw the application"

    def __init__(self, application_id: str) -> None:
        super().__init__(application_id, "withdrawn")


class OptimisticMutationCoordinator:
    """
    Description: Single optimistic-update/rollback contract for every mutable user action.
    Layer: L5
    Input: OptimisticAction via perform()
    Output: MutationResult; failed commits never leave their delta behind
    """

    def __init__(
        self,
        state: ClientState,
        backend: MutationBackend,
        *,
        refresher: Optional[Refresher] = None,
    ) -> None:
        self.state = state
        self.backend = backend
        self.refresher = refresher

    async def perform(self, action: OptimisticAction) -> MutationResult:
        """
        Description: Apply locally, commit remotely, roll back on failure.
        Layer: L5
        Input: OptimisticAction
        Output: MutationResult(ok, error, refreshed)
        """
        if action.region not in REGIONS:
            raise ValueError(f"{type(action).__name__} declares unknown region {action.region!r}")
        before = self.state.snapshot(action.region)
        action.apply(self.state)
        try:
            value = await action.commit(self.backend)
        except asyncio.CancelledError:
            action.revert(self.state)
            raise
        except Exception as e:
            return await self._rollback(action, before, e)

        action.reconcile(self.state, value)
        log.info("Action %s committed", action.name)
        return MutationResult(ok=True, action=action.name, value=value)

    async def _rollback(self, action: OptimisticAction, before: Any, cause: Exception) -> MutationResult:
        action.revert(self.state)
        reason = cause.reason if isinstance(cause, CareerLinkError) else str(cause) or cause.__class__.__name__
        error: CareerLinkError = MutationFailed(
            f"Failed to {action.label}: {reason}. Please try again.", action=action.name, cause=cause
        )
        log.warning("Action %s failed, rolled back: %s", action.name, reason)

        if self.state.snapshot(action.region) == before:
            return MutationResult(ok=False, action=action.name, error=error)

        # Region was touched by something else in the meantime; rebuild it from server truth.
        error = MutationRollbackFailure(
            f"Could not restore '{action.region}' after failed {action.name}; reloaded from server",
            action=action.name,
            region=action.region,
        )
        log.warning("Rollback of %s left region %s inconsistent; forcing refresh", action.name, action.region)
        try:
            if self.refresher is not None:
                await self.refresher(self.state, action.region)
            else:
                await self.backend.load_region(self.state, action.region)
        except Exception:
            log.exception("Forced refresh of region %s failed", action.region)
            return MutationResult(ok=False, action=action.name, error=error, refreshed=False)
        return MutationResult(ok=False, action=action.name, error=error, refreshed=True)
