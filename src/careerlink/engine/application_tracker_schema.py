from __future__ import annotations

from typing import Dict, FrozenSet, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from careerlink.core.state import ApplicationStatus


# Forward-only edges; rejected, offered and withdrawn are terminal.
ALLOWED_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "applied": ("shortlisted", "rejected", "withdrawn"),
    "shortlisted": ("interview", "rejected"),
    "interview": ("offered", "rejected"),
    "offered": (),
    "rejected": (),
    "withdrawn": (),
}

TERMINAL_STATUSES: FrozenSet[str] = frozenset(s for s, nxt in ALLOWED_TRANSITIONS.items() if not nxt)

# Targets only a company administrator of the job's company may request.
ADMIN_TARGETS: FrozenSet[str] = frozenset({"shortlisted", "interview", "offered", "rejected"})

# Targets only the applicant may request.
APPLICANT_TARGETS: FrozenSet[str] = frozenset({"withdrawn"})


def is_legal(current: str, requested: str) -> bool:
    return requested in ALLOWED_TRANSITIONS.get(current, ())


class TransitionRequest(BaseModel):
    """
    Description: One requested application status change.
    Layer: L2
    Input: application_id + requested_status + actor_id (+ status the client last saw)
    Output: validated request consumed by ApplicationTrackerService.transition
    """

    model_config = ConfigDict(extra="forbid")

    application_id: str
    requested_status: ApplicationStatus
    actor_id: str
    expected_status: Optional[ApplicationStatus] = None
