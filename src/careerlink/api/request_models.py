from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from careerlink.core.state import ApplicationStatus, InteractionKind


class ApplicationCreateRequest(BaseModel):
    """
    Description: Request model for POST /applications.
    Layer: L6
    Input: job_id (+ cover note, resume reference)
    Output: normalized submit request
    """
    model_config = ConfigDict(extra="ignore")

    job_id: str
    cover_note: Optional[str] = None
    resume_id: Optional[str] = None


class StatusChangeRequest(BaseModel):
    """
    Description: Request model for POST /applications/{id}/status.
    Layer: L6
    Input: requested status (+ the status the client last saw)
    Output: normalized transition request
    """
    model_config = ConfigDict(extra="ignore")

    status: ApplicationStatus
    expected_status: Optional[ApplicationStatus] = None


class ConnectionCreateRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    addressee_id: str


class InteractionRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: InteractionKind
    comment_id: Optional[str] = Field(default=None, description="required for kind=comment")


class SnoozeRequest(BaseModel):
    """Expiry is server-computed from SNOOZE_DAYS unless the client sends one."""
    model_config = ConfigDict(extra="ignore")

    until: Optional[str] = None


class MarkReadRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    ids: Optional[List[str]] = Field(default=None, description="omit to mark every unread notification")


class MarkReadResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    updated: int


class ModerationResponse(BaseModel):
    """
    Description: Response model for GET /me/moderation.
    Layer: L6
    Input: saved/hidden/blocked/snoozed rows of the actor
    Output: region reload payload for HttpMutationBackend
    """
    model_config = ConfigDict(extra="ignore")

    saved_post_ids: List[str] = Field(default_factory=list)
    hidden_post_ids: List[str] = Field(default_factory=list)
    blocked_user_ids: List[str] = Field(default_factory=list)
    snoozed_until: Dict[str, str] = Field(default_factory=dict)
