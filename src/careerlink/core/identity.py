from __future__ import annotations

from typing import Optional, Protocol

from careerlink.core.state import Profile


class IdentityProvider(Protocol):
    """Description: Identity/session boundary consumed by authority checks.
    Layer: L0
    Input: actor id (+ company id)
    Output: role answers + display profile
    """

    def is_company_admin(self, *, actor_id: str, company_id: str) -> bool: ...

    def profile(self, actor_id: str) -> Optional[Profile]: ...


class StoreIdentityProvider:
    """Answers role questions from the company_admins and profiles tables."""

    def __init__(self, store) -> None:
        self.store = store

    def is_company_admin(self, *, actor_id: str, company_id: str) -> bool:
        return self.store.is_company_admin(company_id=company_id, user_id=actor_id)

    def profile(self, actor_id: str) -> Optional[Profile]:
        return self.store.get_profile(actor_id)
