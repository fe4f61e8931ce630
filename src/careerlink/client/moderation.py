from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Set

from careerlink.core.state import Post, _iso_utc, _utc_now

Visibility = Literal["visible", "blocked", "snoozed", "hidden"]

REGIONS = ("saved", "hidden", "blocked", "snoozed", "applications")


@dataclass
class ClientState:
    """
    Description: Session-local state that optimistic mutations act on.
    Layer: L5
    Input: initial load from the backend + optimistic deltas
    Output: visible feed, badges, saved count, application statuses
    """

    user_id: str
    saved_post_ids: Set[str] = field(default_factory=set)
    saved_count: int = 0
    hidden_post_ids: Set[str] = field(default_factory=set)
    blocked_user_ids: Set[str] = field(default_factory=set)
    snoozed_until: Dict[str, str] = field(default_factory=dict)
    feed: List[Post] = field(default_factory=list)
    application_statuses: Dict[str, str] = field(default_factory=dict)

    def snapshot(self, region: str) -> Any:
        """Deep copy of one region, comparable with == against a later snapshot."""
        if region == "saved":
            return deepcopy((self.saved_post_ids, self.saved_count))
        if region == "hidden":
            return deepcopy(self.hidden_post_ids)
        if region == "blocked":
            return deepcopy(self.blocked_user_ids)
        if region == "snoozed":
            return deepcopy(self.snoozed_until)
        if region == "applications":
            return deepcopy(self.application_statuses)
        raise KeyError(region)

    def visibility(self, post: Post, *, now: Optional[str] = None) -> Visibility:
        return visibility(post, self, now=now)

    def visible_feed(self, *, now: Optional[str] = None) -> List[Post]:
        return [p for p in self.feed if visibility(p, self, now=now) == "visible"]


def visibility(post: Post, state: ClientState, *, now: Optional[str] = None) -> Visibility:
    """
    Description: Resolve why (or whether) a post is shown; block > snooze > hide.
    Layer: L5
    Input: post + client state
    Output: Visibility

    Undoing a lower-precedence mark never reveals a post still covered by a higher one.
    """
    now = now or _iso_utc(_utc_now())
    if post.author_id in state.blocked_user_ids:
        return "blocked"
    until = state.snoozed_until.get(post.author_id)
    if until is not None and until > now:
        return "snoozed"
    if post.id in state.hidden_post_ids:
        return "hidden"
    return "visible"
