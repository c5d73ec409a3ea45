"""
GrowLokal — models/identity.py
─────────────────────────────────────────────────────────────────
Who owns a cart or an order.

    Identity = UserIdentity(email) | GuestIdentity(token)

Stored as (owner_type, owner_id) pairs so that a guest token can
never be mistaken for an email, whatever it looks like.
─────────────────────────────────────────────────────────────────
"""

from dataclasses import dataclass
from typing import Union


OWNER_USER  = "user"
OWNER_GUEST = "guest"


@dataclass(frozen=True)
class UserIdentity:
    email: str

    @property
    def owner_type(self) -> str:
        return OWNER_USER

    @property
    def owner_id(self) -> str:
        return self.email.lower()


@dataclass(frozen=True)
class GuestIdentity:
    token: str

    @property
    def owner_type(self) -> str:
        return OWNER_GUEST

    @property
    def owner_id(self) -> str:
        return self.token


Identity = Union[UserIdentity, GuestIdentity]


def identity_from_owner(owner_type: str, owner_id: str) -> Identity:
    if owner_type == OWNER_USER:
        return UserIdentity(owner_id)
    if owner_type == OWNER_GUEST:
        return GuestIdentity(owner_id)
    raise ValueError(f"Unknown owner type: {owner_type}")
