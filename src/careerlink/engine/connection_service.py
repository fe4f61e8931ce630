from __future__ import annotations

import logging
from typing import Dict, Literal, Optional, Tuple

from careerlink.core.errors import DuplicateEntity, IllegalTransition, Unauthorized
from careerlink.core.identity import IdentityProvider
from careerlink.core.state import Connection, ConnectionView, NoticeDraft, QueuedNotice, TransitionResult
from careerlink.services.notification_service import NotificationService

log = logging.getLogger("engine")

ConnectionVerb = Literal["accept", "reject", "cancel", "remove", "block"]
Role = Literal["requester", "addressee", "either"]

# verb -> (statuses it may leave, target status, participant allowed to act)
VERB_RULES: Dict[str, Tuple[Tuple[str, ...], str, Role]] = {
    "accept": (("pending",), "accepted", "addressee"),
    "reject": (("pending",), "rejected", "addressee"),
    "cancel": (("pending",), "cancelled", "requester"),
    "remove": (("accepted",), "removed", "either"),
    "block": (("pending", "accepted"), "blocked", "either"),
}


class ConnectionService:
    """
    Description: Social-graph state machine (none -> pending_sent/pending_received -> accepted | blocked).
    Layer: L2
    Input: participant actions
    Output: at most one active edge per pair + connection_request / connection_accepted notices
    """

    def __init__(self, store, identity: IdentityProvider, notifications: NotificationService) -> None:
        self.store = store
        self.identity = identity
        self.notifications = notifications

    def status_between(self, viewer_id: str, other_id: str) -> ConnectionView:
        conn = self.store.find_active_connection(viewer_id, other_id)
        return conn.view_for(viewer_id) if conn else "none"

    def request(self, *, actor_id: str, other_id: str) -> TransitionResult:
        """
        Description: none -> pending; notifies the addressee.
        Layer: L2
        Input: actor_id + other_id
        Output: TransitionResult (no-op when the actor's request is already pending)
        """
        if actor_id == other_id:
            raise IllegalTransition(current="none", requested="pending_sent", entity="connection")

        existing = self.store.find_active_connection(actor_id, other_id)
        if existing is not None:
            return self._existing_request(existing, actor_id)

        connection_id = self.store.new_id("conn")
        draft = Connection(
            id=connection_id,
            requester_id=actor_id,
            addressee_id=other_id,
            created_at="",
            updated_at="",
        )
        notice = self._build_notice(draft, "pending", actor_id)
        try:
            conn = self.store.create_connection(
                requester_id=actor_id,
                addressee_id=other_id,
                connection_id=connection_id,
                notice=notice,
            )
        except DuplicateEntity:
            existing = self.store.find_active_connection(actor_id, other_id)
            if existing is None:
                raise
            return self._existing_request(existing, actor_id)

        log.info("Connection %s: none -> pending (%s -> %s)", conn.id, actor_id, other_id)
        notification = self.notifications.flush(notice) if isinstance(notice, NoticeDraft) else None
        return TransitionResult(
            entity_id=conn.id,
            previous_status="none",
            status="pending",
            changed=True,
            notification_id=notification.id if notification else None,
            delivery_pending=notice is not None and notification is None,
        )

    def _existing_request(self, existing: Connection, actor_id: str) -> TransitionResult:
        if existing.status == "pending" and existing.requester_id == actor_id:
            return TransitionResult(
                entity_id=existing.id, previous_status="pending", status="pending", changed=False
            )
        raise IllegalTransition(
            current=existing.view_for(actor_id), requested="pending_sent", entity="connection"
        )

    def act(self, *, connection_id: str, verb: str, actor_id: str) -> TransitionResult:
        """
        Description: Apply accept/reject/cancel/remove/block to an existing edge.
        Layer: L2
        Input: connection_id + verb + actor_id
        Output: TransitionResult (no-op when already in the verb's target status)
        """
        if verb not in VERB_RULES:
            raise IllegalTransition(current="?", requested=verb, entity="connection")
        sources, target, role = VERB_RULES[verb]

        conn = self.store.get_connection(connection_id)
        if not conn.involves(actor_id):
            raise Unauthorized("Only participants can change a connection")
        if role == "requester" and actor_id != conn.requester_id:
            raise Unauthorized(f"Only the requester can {verb} a pending request")
        if role == "addressee" and actor_id != conn.addressee_id:
            raise Unauthorized(f"Only the recipient can {verb} a pending request")

        with self.store.lock_for(connection_id):
            conn = self.store.get_connection(connection_id)
            current = conn.status
            if current == target:
                return TransitionResult(entity_id=conn.id, previous_status=current, status=current, changed=False)
            if current not in sources:
                log.info("Illegal connection transition %s: %s -> %s by %s", conn.id, current, target, actor_id)
                raise IllegalTransition(current=current, requested=target, entity="connection")

            notice = self._build_notice(conn, target, actor_id)
            moved = self.store.compare_and_set_connection_status(
                connection_id=conn.id,
                expected=current,
                new=target,
                notice=notice,
                blocked_by=actor_id if target == "blocked" else None,
            )
            if not moved:
                latest = self.store.get_connection(conn.id)
                if latest.status == target:
                    return TransitionResult(entity_id=conn.id, previous_status=target, status=target, changed=False)
                raise IllegalTransition(current=latest.status, requested=target, entity="connection")

        log.info("Connection %s: %s -> %s by %s", conn.id, current, target, actor_id)
        notification = self.notifications.flush(notice) if isinstance(notice, NoticeDraft) else None
        return TransitionResult(
            entity_id=conn.id,
            previous_status=current,
            status=target,
            changed=True,
            notification_id=notification.id if notification else None,
            delivery_pending=notice is not None and notification is None,
        )

    def block(self, *, actor_id: str, other_id: str) -> TransitionResult:
        """Block from any state; opens a blocked edge when none is active."""
        if actor_id == other_id:
            raise IllegalTransition(current="none", requested="blocked", entity="connection")
        existing = self.store.find_active_connection(actor_id, other_id)
        if existing is not None:
            if existing.status == "blocked":
                # Edge already blocked by the other side; still record this actor's own block.
                self.store.add_block(user_id=actor_id, blocked_user_id=other_id)
            return self.act(connection_id=existing.id, verb="block", actor_id=actor_id)
        try:
            conn = self.store.create_connection(
                requester_id=actor_id, addressee_id=other_id, status="blocked", blocked_by=actor_id
            )
        except DuplicateEntity:
            existing = self.store.find_active_connection(actor_id, other_id)
            if existing is None:
                raise
            return self.act(connection_id=existing.id, verb="block", actor_id=actor_id)
        log.info("Connection %s: none -> blocked by %s", conn.id, actor_id)
        return TransitionResult(entity_id=conn.id, previous_status="none", status="blocked", changed=True)

    def _build_notice(self, conn: Connection, new_status: str, actor_id: str) -> Optional[QueuedNotice]:
        try:
            return self.notifications.connection_notice(
                connection=conn,
                new_status=new_status,
                sender=self.identity.profile(actor_id),
                sender_id=actor_id,
            )
        except Exception:
            log.exception(
                "Notice construction failed for connection %s -> %s; queued for rebuild by the retry worker",
                conn.id,
                new_status,
            )
            return self.notifications.deferred_connection_notice(
                connection=conn, new_status=new_status, sender_id=actor_id
            )
