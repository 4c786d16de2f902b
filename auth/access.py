"""
auth/access.py -- Role hierarchy and member-data ownership rules.

Pure decisions, no I/O. The guard in auth/middleware.py wraps these into
checks; route code can also call them directly for finer-grained filtering.
"""

from __future__ import annotations

from auth.models import Role, User


def has_permission(role: Role | None, required_level: int) -> bool:
    """True iff role's level is at least required_level. No role never passes."""
    if role is None:
        return False
    return int(role) >= int(required_level)


def _as_member_id(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def can_access_member_data(user: User | None, target_member_id: object) -> bool:
    """May user read or modify the member record target_member_id?

    Admin and Pastor: always. Member: only their own linked record. Anything
    else, including a Member with no linked record or an unparseable target,
    is refused.
    """
    if user is None:
        return False
    target = _as_member_id(target_member_id)
    if target is None:
        return False
    if has_permission(user.role, Role.PASTOR):
        return True
    if user.role == Role.MEMBER and user.member_id is not None:
        return user.member_id == target
    return False
