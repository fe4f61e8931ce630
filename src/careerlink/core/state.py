from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def _utc_now() -> datetime:
    """Description: Get current UTC timestamp.
    Layer: L0
    Input: None
    Output: datetime (UTC)
    """
    return datetime.now(timezone.utc)


def _iso_utc(dt: datetime) -> str:
    """Description: Convert datetime to fixed-width ISO-8601 Zulu time.
    Layer: L0
    Input: datetime
    Output: str (e.g., 2026-02-20T12:34:56.000001Z)

    Fixed width keeps lexical order equal to chronological order.
    """
    return dt.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def _parse_utc(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


ApplicationStatus = Literal["applied", "shortlisted", "interview", "offered", "rejected", "withdrawn"]
ConnectionStatus = Literal["pending", "accepted", "rejected", "cancelled", "removed", "blocked"]
ConnectionView = Literal["none", "pending_sent", "pending_received", "accepted", "blocked"]
InteractionKind = Literal["like", "comment", "share"]

NotificationType = Literal[
    "application_shortlisted",
    "application_interview",
    "application_offered",
    "application_rejected",
    "connection_request",
    "connection_accepted",
    "like",
    "comment",
    "share",
]

ACTIVE_CONNECTION_STATUSES = ("pending", "accepted", "blocked")


class _WireModel(BaseModel):
    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)


class NotificationPayload(_WireModel):
    """Description: Type-dependent notification payload.
    Layer: L1
    Input: transition context (sender, job, post)
    Output: camelCase wire payload
    """

    sender_name: Optional[str] = None
    sender_avatar: Optional[str] = None
    job_title: Optional[str] = None
    post_id: Optional[str] = None
    message: Optional[str] = None

    # Related entity ids for client navigation.
    sender_id: Optional[str] = None
    application_id: Optional[str] = None
    connection_id: Optional[str] = None


class Notification(_WireModel):
    """Description: Delivery envelope for one event.
    Layer: L1
    Input: committed transition
    Output: row in notifications + pushed wire record
    """

    id: str
    recipient_id: str
    type: NotificationType
    payload: NotificationPayload = Field(default_factory=NotificationPayload)
    is_read: bool = False
    created_at: str

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def sort_key(self) -> tuple:
        return (self.created_at, self.id)


class Watermark(BaseModel):
    """Boundary below which a paginated fetch continues loading older items."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    created_at: str
    id: str

    @classmethod
    def of(cls, n: Notification) -> "Watermark":
        return cls(created_at=n.created_at, id=n.id)


class Company(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    name: str


class Job(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    company_id: str
    title: str


class Post(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    author_id: str
    body: str = ""
    created_at: str


class Application(BaseModel):
    """Description: One candidate's bid for one job opening.
    Layer: L1
    Input: applicant submission
    Output: row in applications
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    job_id: str
    applicant_id: str
    status: ApplicationStatus = "applied"
    cover_note: Optional[str] = None
    resume_id: Optional[str] = None
    applied_at: str

    # Present only when the schema carries the audit columns.
    status_changed_at: Optional[str] = None
    status_changed_by: Optional[str] = None


class Connection(BaseModel):
    """Description: Social-graph edge between two participants.
    Layer: L1
    Input: connection request
    Output: row in connections
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    requester_id: str
    addressee_id: str
    status: ConnectionStatus = "pending"
    created_at: str
    updated_at: str

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_CONNECTION_STATUSES

    def involves(self, user_id: str) -> bool:
        return user_id in (self.requester_id, self.addressee_id)

    def other(self, user_id: str) -> str:
        return self.addressee_id if user_id == self.requester_id else self.requester_id

    def view_for(self, viewer_id: str) -> ConnectionView:
        if not self.is_active:
            return "none"
        if self.status == "pending":
            return "pending_sent" if viewer_id == self.requester_id else "pending_received"
        return self.status  # type: ignore[return-value]


class OutboxEntry(BaseModel):
    """Description: Committed notice awaiting notification-row creation.
    Layer: L1
    Input: transition commit
    Output: replayable delivery record
    """

    model_config = ConfigDict(extra="forbid")

    id: int
    event_key: str
    recipient_id: str
    type: Optional[NotificationType] = None
    payload: Optional[NotificationPayload] = None
    source: Optional[Dict[str, str]] = None
    attempts: int = 0
    next_attempt_at: str
    last_error: Optional[str] = None
    created_at: str

    @property
    def needs_build(self) -> bool:
        """True while the notice itself still has to be built from its source."""
        return self.source is not None


class Capabilities(BaseModel):
    """Description: Optional schema features detected once at startup.
    Layer: L1
    Input: PRAGMA table_info
    Output: flags used to build write payloads
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    application_audit_columns: bool = False


class TransitionResult(BaseModel):
    """Description: Outcome of an accepted transition request.
    Layer: L2
    Input: engine commit
    Output: changed flag + notice reference
    """

    model_config = ConfigDict(extra="forbid")

    entity_id: str
    previous_status: str
    status: str
    changed: bool
    notification_id: Optional[str] = None
    delivery_pending: bool = False


class NoticeDraft(BaseModel):
    """Description: Notice queued atomically with the transition that caused it.
    Layer: L2
    Input: committed transition context
    Output: outbox row keyed by (event_key, recipient_id)
    """

    model_config = ConfigDict(extra="forbid")

    event_key: str
    recipient_id: str
    type: NotificationType
    payload: NotificationPayload = Field(default_factory=NotificationPayload)


class DeferredNotice(BaseModel):
    """Description: Placeholder queued when a notice could not be built at commit time.
    Layer: L2
    Input: event key + recipient + the ids needed to rebuild the notice
    Output: outbox row the retry worker turns into a NoticeDraft
    """

    model_config = ConfigDict(extra="forbid")

    event_key: str
    recipient_id: str
    source: Dict[str, str]


QueuedNotice = Union[NoticeDraft, DeferredNotice]


class Profile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    display_name: str
    avatar_url: Optional[str] = None
