from __future__ import annotations

import logging
from datetime import timedelta
from typing import Dict, Optional, Tuple

from careerlink.core.errors import NotificationDeliveryFailure
from careerlink.core.settings import Settings
from careerlink.core.state import (
    Application,
    Connection,
    DeferredNotice,
    InteractionKind,
    Job,
    NoticeDraft,
    Notification,
    NotificationPayload,
    NotificationType,
    OutboxEntry,
    Profile,
    _iso_utc,
    _utc_now,
)

log = logging.getLogger("notifications")


# Notice-worthy application statuses and their templates.
STATUS_NOTICES: Dict[str, Tuple[NotificationType, str]] = {
    "shortlisted": ("application_shortlisted", "Great! You've been shortlisted for {job_title}"),
    "interview": ("application_interview", "Interview scheduled for {job_title}"),
    "offered": ("application_offered", "Congratulations! You received an offer for {job_title}"),
    "rejected": ("application_rejected", "Your application for {job_title} was not selected"),
}


def application_event_key(application_id: str, status: str) -> str:
    return f"application:{application_id}:{status}"


def connection_event_key(connection_id: str, status: str) -> str:
    return f"connection:{connection_id}:{status}"


def interaction_event_key(post_id: str, kind: str, actor_id: str, comment_id: Optional[str] = None) -> str:
    if kind == "comment" and comment_id:
        return f"post:{post_id}:comment:{comment_id}"
    return f"post:{post_id}:{kind}:{actor_id}"


def backoff_seconds(attempts: int, *, base: float, maximum: float) -> float:
    """Exponential backoff capped at maximum; attempts counts prior failures."""
    return min(base * (2 ** max(0, attempts)), maximum)


def describe(notification: Notification) -> str:
    """
    Description: Human line for a notification as shown in the bell dropdown.
    Layer: L4
    Input: Notification
    Output: str
    """
    p = notification.payload
    sender = p.sender_name or "Someone"
    t = notification.type
    if t == "like":
        return f"{sender} liked your post"
    if t == "comment":
        return f"{sender} commented on your post"
    if t == "share":
        return f"{sender} shared your post"
    if t == "connection_request":
        return f"{sender} sent you a connection request"
    if t == "connection_accepted":
        return f"{sender} accepted your connection request"
    return p.message or "New notification"


class NotificationService:
    """
    Description: Builds notices for committed transitions and materializes them from the outbox.
    Layer: L2
    Input: transition context; outbox entries
    Output: NoticeDraft before commit, Notification rows after commit
    """

    def __init__(self, store, settings: Settings) -> None:
        self.store = store
        self.s = settings

    # --------------------
    # Notice construction
    # --------------------
    def application_notice(self, *, application: Application, job: Job, new_status: str) -> Optional[NoticeDraft]:
        """
        Description: Notice addressed to the applicant for a notice-worthy status.
        Layer: L2
        Input: application + job + target status
        Output: NoticeDraft or None (applied/withdrawn produce no notice)
        """
        notice_template = STATUS_NOTICES.get(new_status)
        if notice_template is None:
            return None
        ntype, template = notice_template
        company_name = None
        try:
            company_name = self.store.get_company(job.company_id).name
        except Exception:
            log.warning("Company %s missing while building notice for %s", job.company_id, application.id)
        return NoticeDraft(
            event_key=application_event_key(application.id, new_status),
            recipient_id=application.applicant_id,
            type=ntype,
            payload=NotificationPayload(
                sender_name=company_name,
                job_title=job.title,
                message=template.format(job_title=job.title),
                application_id=application.id,
            ),
        )

    def connection_notice(
        self,
        *,
        connection: Connection,
        new_status: str,
        sender: Optional[Profile],
        sender_id: str,
    ) -> Optional[NoticeDraft]:
        if new_status == "pending":
            ntype: NotificationType = "connection_request"
        elif new_status == "accepted":
            ntype = "connection_accepted"
        else:
            return None
        payload = NotificationPayload(
            sender_name=sender.display_name if sender else None,
            sender_avatar=sender.avatar_url if sender else None,
            sender_id=sender_id,
            connection_id=connection.id,
        )
        notice = NoticeDraft(
            event_key=connection_event_key(connection.id, new_status),
            recipient_id=connection.other(sender_id),
            type=ntype,
            payload=payload,
        )
        notice.payload.message = describe(
            Notification(id="", recipient_id=notice.recipient_id, type=ntype, payload=payload, created_at="")
        )
        return notice

    def interaction_notice(
        self,
        *,
        post_id: str,
        post_author_id: str,
        kind: InteractionKind,
        actor_id: str,
        sender: Optional[Profile],
        comment_id: Optional[str] = None,
    ) -> Optional[NoticeDraft]:
        if actor_id == post_author_id:
            return None
        payload = NotificationPayload(
            sender_name=sender.display_name if sender else None,
            sender_avatar=sender.avatar_url if sender else None,
            sender_id=actor_id,
            post_id=post_id,
        )
        payload.message = describe(
            Notification(id="", recipient_id=post_author_id, type=kind, payload=payload, created_at="")
        )
        return NoticeDraft(
            event_key=interaction_event_key(post_id, kind, actor_id, comment_id),
            recipient_id=post_author_id,
            type=kind,
            payload=payload,
        )

    # --------------------
    # Deferred notices
    # --------------------
    def deferred_application_notice(self, *, application: Application, new_status: str) -> Optional[DeferredNotice]:
        """
        Description: Replayable placeholder used when application_notice failed at commit time.
        Layer: L2
        Input: application + target status
        Output: DeferredNotice, or None when the status is not notice-worthy
        """
        if new_status not in STATUS_NOTICES:
            return None
        return DeferredNotice(
            event_key=application_event_key(application.id, new_status),
            recipient_id=application.applicant_id,
            source={"kind": "application", "application_id": application.id, "status": new_status},
        )

    def deferred_connection_notice(
        self, *, connection: Connection, new_status: str, sender_id: str
    ) -> Optional[DeferredNotice]:
        if new_status not in ("pending", "accepted"):
            return None
        return DeferredNotice(
            event_key=connection_event_key(connection.id, new_status),
            recipient_id=connection.other(sender_id),
            source={
                "kind": "connection",
                "connection_id": connection.id,
                "status": new_status,
                "sender_id": sender_id,
            },
        )

    def rebuild(self, entry: OutboxEntry) -> Optional[NoticeDraft]:
        """
        Description: Build the notice a deferred outbox entry stands for.
        Layer: L2
        Input: OutboxEntry with a source
        Output: NoticeDraft (None when the source no longer yields a notice)
        """
        source = entry.source or {}
        kind = source.get("kind")
        if kind == "application":
            application = self.store.get_application(source["application_id"])
            job = self.store.get_job(application.job_id)
            return self.application_notice(application=application, job=job, new_status=source["status"])
        if kind == "connection":
            connection = self.store.get_connection(source["connection_id"])
            sender_id = source["sender_id"]
            return self.connection_notice(
                connection=connection,
                new_status=source["status"],
                sender=self.store.get_profile(sender_id),
                sender_id=sender_id,
            )
        raise ValueError(f"Unknown deferred notice kind {kind!r}")

    # --------------------
    # Delivery
    # --------------------
    def deliver(self, entry: OutboxEntry) -> Optional[Notification]:
        """
        Description: Create the notification row for one outbox entry.
        Layer: L2
        Input: OutboxEntry (deferred entries are rebuilt first)
        Output: Notification (None when already delivered or nothing to deliver)
        """
        try:
            if entry.needs_build:
                notice = self.rebuild(entry)
                if notice is None:
                    self.store.drop_outbox_entry(entry.id)
                    log.info("Deferred event %s no longer yields a notice; dropped", entry.event_key)
                    return None
                entry = self.store.resolve_outbox_entry(entry_id=entry.id, notice=notice)
                log.info("Rebuilt deferred notice for event %s", entry.event_key)
            return self.store.deliver_outbox_entry(entry)
        except Exception as e:
            raise NotificationDeliveryFailure(str(e) or e.__class__.__name__, event_key=entry.event_key) from e

    def record_failure(self, entry: OutboxEntry, err: NotificationDeliveryFailure) -> str:
        delay = backoff_seconds(
            entry.attempts,
            base=self.s.DELIVERY_RETRY_BASE_SECONDS,
            maximum=self.s.DELIVERY_RETRY_MAX_SECONDS,
        )
        next_at = _iso_utc(_utc_now() + timedelta(seconds=delay))
        self.store.record_outbox_failure(entry_id=entry.id, error=err.reason, next_attempt_at=next_at)
        log.warning(
            "Notification delivery failed for event %s -> %s (attempt %d, retry at %s): %s",
            entry.event_key,
            entry.recipient_id,
            entry.attempts + 1,
            next_at,
            err.reason,
        )
        return next_at

    def flush(self, notice: NoticeDraft) -> Optional[Notification]:
        """
        Description: Best-effort immediate delivery right after a commit.
        Layer: L2
        Input: NoticeDraft that was queued with the commit
        Output: Notification, or None when delivery is deferred to the retry worker
        """
        entry = None
        try:
            entry = self.store.get_outbox_entry(event_key=notice.event_key, recipient_id=notice.recipient_id)
            if entry is not None:
                delivered = self.deliver(entry)
                if delivered is not None:
                    return delivered
            return self.store.get_notification_for_event(event_key=notice.event_key, recipient_id=notice.recipient_id)
        except NotificationDeliveryFailure as err:
            if entry is not None:
                try:
                    self.record_failure(entry, err)
                except Exception:
                    log.exception("Could not reschedule outbox entry for event %s", notice.event_key)
            return None
        except Exception:
            log.exception("Outbox lookup failed for event %s; retry worker will replay it", notice.event_key)
            return None
