from __future__ import annotations

import logging
from typing import Optional

from careerlink.core.identity import IdentityProvider
from careerlink.core.state import InteractionKind, Notification
from careerlink.services.notification_service import NotificationService

log = logging.getLogger("engine")


class InteractionNotifier:
    """
    Description: Notices for likes, comments and shares on a post.
    Layer: L2
    Input: post_id + actor_id + kind (+ comment_id)
    Output: at most one notification to the post author per interaction event
    """

    def __init__(self, store, identity: IdentityProvider, notifications: NotificationService) -> None:
        self.store = store
        self.identity = identity
        self.notifications = notifications

    def record(
        self,
        *,
        post_id: str,
        actor_id: str,
        kind: InteractionKind,
        comment_id: Optional[str] = None,
    ) -> Optional[Notification]:
        post = self.store.get_post(post_id)
        notice = self.notifications.interaction_notice(
            post_id=post.id,
            post_author_id=post.author_id,
            kind=kind,
            actor_id=actor_id,
            sender=self.identity.profile(actor_id),
            comment_id=comment_id,
        )
        if notice is None:
            return None
        self.store.enqueue_notice(notice)
        log.info("Post %s: %s by %s", post_id, kind, actor_id)
        return self.notifications.flush(notice)
