"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and the
guard do the work; these only own the domain shape.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum


class Role(IntEnum):
    """Privilege levels. A higher role satisfies every check for a lower one.

    The database stores the capitalized label ("Admin", "Pastor", "Member").
    from_label() raises ValueError on anything else -- a typo must never map to
    some default level.
    """

    MEMBER = 1
    PASTOR = 2
    ADMIN = 3

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @classmethod
    def from_label(cls, value: str | Role) -> Role:
        if isinstance(value, Role):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Unknown role: {value!r}")
        try:
            return cls[value.strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown role: {value!r}") from None


class PermissionLevel(IntEnum):
    """Named requirement levels for require_level()."""

    READ_OWN = 1
    READ_ALL = 2
    WRITE_ALL = 2
    ADMIN = 3


@dataclass
class User:
    """An account that can log in.

    member_id links the account to a member profile owned by the membership
    subsystem. Admin and Pastor accounts may leave it unset; a Member account
    without it can read no member data at all.

    hashed_password is never serialized to clients. failed_login_attempts and
    last_login are maintained by the login path only.
    """

    username: str
    email: str
    role: Role
    id: int | None = None
    hashed_password: str | None = None
    member_id: int | None = None
    is_active: bool = True
    failed_login_attempts: int = 0
    last_login: str | None = None
    password_reset_required: bool = False
    created_at: str | None = None


@dataclass
class Session:
    """Proof of authentication.

    token is the raw bearer value. It is only populated on the object returned
    by SessionStore.create() and on lookups made with the raw token in hand;
    the store itself persists an HMAC of it. Objects built from listings carry
    token=None.
    """

    user_id: int
    expires_at: str
    id: int | None = None
    token: str | None = None
    created_at: str | None = None
    last_accessed: str | None = None


@dataclass(frozen=True)
class SessionStats:
    total: int
    active: int
    expired: int
