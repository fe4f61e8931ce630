from __future__ import annotations

from typing import Optional


class CareerLinkError(Exception):
    """Description: Base error carrying a machine code and a human-readable reason.
    Layer: L0
    Input: reason text
    Output: exception surfaced to the initiating actor or handled by its layer
    """

    code = "error"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason

    def to_dict(self) -> dict:
        return {"error": self.code, "reason": self.reason}


class TransitionError(CareerLinkError):
    """Transition rejected before any write; no notification is produced."""

    code = "transition_error"


class IllegalTransition(TransitionError):
    code = "illegal_transition"

    def __init__(self, *, current: str, requested: str, entity: str = "application") -> None:
        super().__init__(f"Cannot move {entity} from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested

    def to_dict(self) -> dict:
        return {**super().to_dict(), "current": self.current, "requested": self.requested}


class Unauthorized(TransitionError):
    code = "unauthorized"


class NotFound(CareerLinkError):
    code = "not_found"


class DuplicateEntity(CareerLinkError):
    code = "duplicate"


class NotificationDeliveryFailure(CareerLinkError):
    """Commit succeeded but the notice could not be written or fanned out.

    Never surfaced through the action error path; the outbox entry keeps it replayable.
    """

    code = "delivery_failure"

    def __init__(self, reason: str, *, event_key: str) -> None:
        super().__init__(reason)
        self.event_key = event_key


class StalePageFetch(CareerLinkError):
    code = "stale_page"


class MarkReadFailed(CareerLinkError):
    code = "mark_read_failed"


class MutationFailed(CareerLinkError):
    code = "mutation_failed"

    def __init__(self, reason: str, *, action: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(reason)
        self.action = action
        self.cause = cause


class MutationRollbackFailure(CareerLinkError):
    code = "rollback_failed"

    def __init__(self, reason: str, *, action: str, region: str) -> None:
        super().__init__(reason)
        self.action = action
        self.region = region
